import pytest

from stream_utils.parsing.errors import ReferenceParseFailure
from stream_utils.parsing.reference_extractor import (
    bracket_wrap_strategy,
    brace_scan_strategy,
    build_reference_record,
    extract_references,
    line_by_line_strategy,
    parse_reference_block,
    records_from_search_response,
)


def block(payload: str) -> str:
    return f"<search_results>{payload}</search_results>"


def test_comma_separated_objects_parse_with_bracket_wrap():
    payload = '{"doc_index": 1, "title": "Cap. 57"}, {"doc_index": 2, "title": "HCA 123/2020"}'
    records = bracket_wrap_strategy(payload)
    assert [r.id for r in records] == [1, 2]
    assert records[0].title == "Cap. 57"


def test_nested_lists_are_flattened():
    records = bracket_wrap_strategy('[{"doc_index": 1}, [{"doc_index": 2}]]')
    assert [r.id for r in records] == [1, 2]


def test_newline_separated_objects_fall_back_to_line_by_line():
    payload = '{"doc_index": 1, "title": "A"}\n{"doc_index": 2, "title": "B"}\nnot json'
    assert bracket_wrap_strategy(payload) == []
    assert [r.title for r in line_by_line_strategy(payload)] == ["A", "B"]
    assert [r.id for r in parse_reference_block(payload)] == [1, 2]


def test_objects_inside_prose_fall_back_to_brace_scan():
    payload = 'found {"doc_index": 1, "title": "A"} and also {"docIndex": 2} done'
    assert line_by_line_strategy(payload) == []
    assert [r.id for r in brace_scan_strategy(payload)] == [1, 2]


def test_unparsable_block_reports_failure_and_yields_nothing():
    failures = []
    records = extract_references(block("no structure here"), on_failure=failures.append)
    assert records == []
    assert len(failures) == 1
    assert isinstance(failures[0], ReferenceParseFailure)
    assert failures[0].payload == "no structure here"


def test_parse_reference_block_raises_when_all_strategies_fail():
    with pytest.raises(ReferenceParseFailure):
        parse_reference_block('{"title": "no index"}')


def test_blocks_keep_discovery_order_and_duplicates():
    buffer = (
        block('{"doc_index": 2, "title": "B"}')
        + " text "
        + block('{"doc_index": 1, "title": "A"}\n{"doc_index": 2, "title": "B again"}')
    )
    records = extract_references(buffer)
    assert [(r.id, r.title) for r in records] == [(2, "B"), (1, "A"), (2, "B again")]


def test_incomplete_block_is_ignored():
    assert extract_references('<search_results>{"doc_index": 1}') == []


def test_record_defaults():
    record = build_reference_record({"doc_index": 1})
    assert record.to_dict() == {
        "id": 1,
        "title": "search result",
        "snippet": "",
        "url": None,
        "source": "Unknown",
        "score": 0.0,
    }


def test_record_field_fallbacks_and_score_clamp():
    record = build_reference_record({
        "doc_id": "7",
        "content": "body text",
        "link": "https://example.hk/doc",
        "source": "HKLII",
        "score": 3.5,
    })
    assert record.id == 7
    assert record.snippet == "body text"
    assert record.url == "https://example.hk/doc"
    assert record.source == "HKLII"
    assert record.score == 1.0


@pytest.mark.parametrize("value,expected", [
    (3, 3),
    ("4", 4),
    (5.0, 5),
    (5.5, None),
    (0, None),
    (-1, None),
    (True, None),
    ("abc", None),
    (None, None),
])
def test_doc_index_must_be_positive_integer(value, expected):
    record = build_reference_record({"doc_index": value})
    assert (record.id if record else None) == expected


def test_non_mapping_input_never_raises():
    assert build_reference_record(["doc_index", 1]) is None
    assert build_reference_record("doc_index") is None
    assert build_reference_record(None) is None


def test_escaped_title_is_decoded():
    # JSON-level escapes are decoded by the parser, literal ones by the record builder
    records = extract_references(block('{"doc_index": 1, "title": "\\u4f60\\u597d"}'))
    assert records[0].title == "你好"
    records = extract_references(block('{"doc_index": 1, "title": "\\\\u4f60\\\\u597d"}'))
    assert records[0].title == "你好"


def test_search_response_with_results_reference():
    payload = {"results": {"reference": [
        {"title": "Landlord and Tenant Ordinance", "link": "https://hklii.hk/a", "content": "s. 6"},
        {"title": "HCA 1/2021", "url": "https://hklii.hk/b", "snippet": "held"},
    ]}}
    records = records_from_search_response(payload)
    assert [r.id for r in records] == [1, 2]
    assert records[0].url == "https://hklii.hk/a"
    assert records[0].snippet == "s. 6"
    assert records[1].snippet == "held"


def test_search_response_legacy_shape_and_own_ids():
    records = records_from_search_response({"reference": [{"doc_index": 9, "title": "X"}]})
    assert [r.id for r in records] == [9]


@pytest.mark.parametrize("payload", [None, [], {}, {"results": {}}, {"reference": "bad"}])
def test_search_response_without_references(payload):
    assert records_from_search_response(payload) == []
