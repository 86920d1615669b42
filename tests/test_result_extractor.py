import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parents[1]))
from debug_sandbox_launcher import (
    ExtractionPhase,
    ResultExtractor,
    extract_result,
)


def _feed_all(extractor, chunks):
    return [payload for payload in map(extractor.feed, chunks) if payload is not None]


def test_payload_in_single_chunk_after_noise():
    extractor = ResultExtractor()

    payloads = _feed_all(extractor, ["noise ", 'RESULT_BEGIN{"a":1}RESULT_END trailing'])

    assert payloads == ['{"a":1}']
    assert extractor.phase is ExtractionPhase.DONE


def test_payload_accumulates_across_chunks():
    chunks = ["RESULT_BEGIN", "partial-data-", "more-data", "RESULT_END"]

    assert extract_result(chunks) == "partial-data-more-data"


def test_payload_is_whitespace_trimmed():
    chunks = ["(lldb) step\nRESULT_BEGIN\n", '  {"steps": []}\n', "\nRESULT_END\n(lldb) "]

    assert extract_result(chunks) == '{"steps": []}'


def test_chatter_before_begin_is_ignored():
    extractor = ResultExtractor()

    assert extractor.feed("Process 42 launched\n") is None
    assert extractor.feed("breakpoint hit\n") is None
    assert extractor.phase is ExtractionPhase.SEEKING_BEGIN
    assert extractor.accumulated == ""


def test_end_without_begin_is_ignored():
    extractor = ResultExtractor()

    assert extractor.feed("stray RESULT_END marker") is None
    assert not extractor.done
    assert extractor.feed('RESULT_BEGIN"ok"RESULT_END') == '"ok"'


def test_never_resolves_without_end():
    extractor = ResultExtractor()

    payloads = _feed_all(extractor, ["RESULT_BEGIN", '{"a":', "1}", "more output"])

    assert payloads == []
    assert extractor.phase is ExtractionPhase.ACCUMULATING
    assert extractor.payload is None
    assert extractor.accumulated == '{"a":1}more output'


def test_resolves_exactly_once():
    extractor = ResultExtractor()

    payloads = _feed_all(
        extractor,
        ["RESULT_BEGIN1RESULT_END", "RESULT_BEGIN2RESULT_END", "RESULT_BEGIN", "3", "RESULT_END"],
    )

    assert payloads == ["1"]
    assert extractor.payload == "1"


def test_same_chunk_sentinels_use_only_text_between_them():
    chunks = ["garbage before", "xxRESULT_BEGIN[1, 2]RESULT_ENDyy"]

    assert extract_result(chunks) == "[1, 2]"


def test_begin_chunk_tail_starts_the_payload():
    chunks = ['log RESULT_BEGIN{"a"', ':1}RESULT_END']

    assert extract_result(chunks) == '{"a":1}'


def test_second_begin_restarts_accumulation():
    chunks = ["RESULT_BEGINstale", "RESULT_BEGINfresh", "RESULT_END"]

    assert extract_result(chunks) == "fresh"


def test_end_before_new_begin_finishes_current_payload():
    chunks = ["RESULT_BEGINfirst", " half RESULT_END then RESULT_BEGIN second"]

    assert extract_result(chunks) == "first half"


def test_sentinel_split_across_chunks_is_not_detected():
    assert extract_result(["RESULT_BEG", "IN{}RESULT_END"]) is None
    assert extract_result(["RESULT_BEGIN{}RESULT_", "END"]) is None


def test_empty_payload():
    assert extract_result(["RESULT_BEGIN   RESULT_END"]) == ""


def test_custom_sentinels():
    extractor = ResultExtractor(begin="<<", end=">>")

    assert extractor.feed("a << b >> c") == "b"
