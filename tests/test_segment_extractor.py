from stream_utils.parsing.segment_extractor import split_segments


def test_no_reasoning_marker_means_whole_buffer_is_candidate():
    segments = split_segments("Just an answer.")
    assert segments.content_candidate == "Just an answer."
    assert segments.think_text == ""
    assert not segments.reasoning_open
    assert not segments.reasoning_closed


def test_closed_reasoning_splits_buffer():
    segments = split_segments("preamble<think>  weighing Cap. 7  </think>The answer")
    assert segments.think_text == "weighing Cap. 7"
    assert segments.content_candidate == "The answer"
    assert segments.reasoning_closed


def test_open_reasoning_keeps_candidate_empty():
    segments = split_segments("<think>still thinking")
    assert segments.think_text == "still thinking"
    assert segments.content_candidate == ""
    assert segments.reasoning_open
    assert not segments.reasoning_closed


def test_partial_close_marker_is_held_back_while_streaming():
    assert split_segments("<think>almost</thi", streaming=True).think_text == "almost"
    assert split_segments("<think>almost</thi").think_text == "almost</thi"


def test_only_first_close_after_first_open_counts():
    segments = split_segments("<think>a</think>b<think>c</think>d")
    assert segments.think_text == "a"
    assert segments.content_candidate == "b<think>c</think>d"
