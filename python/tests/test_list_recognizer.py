"""
Unit tests for the numbered-list recognizer
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import RecognizerConfig
from list_recognizer import (
    EXPECTED_DOCUMENT, EXPECTED_INFERRED, EXPECTED_OVERRIDE,
    RecognitionResult, boilerplate_rule, cut_reference_block, enumerate_blocks,
    find_count_phrase, infer_expected, recognize, score_result, should_stop_early
)


def numbered(count: int, start: int = 1) -> str:
    return '\n'.join(f"{i}. Person Number{i} (born 1970, Tehran)" for i in range(start, start + count))


NOTICE_HEADER = (
    "금융위원회 고시 제2024-10호\n"
    "공중 등 협박목적 및 대량살상무기확산을 위한 자금조달행위의 금지에 관한 법률에 따라\n"
    "금융거래등 제한대상자 (1,066명)\n"
)

REFERENCE_BLOCK = (
    "\n◇ 참고\n"
    "미국의 제재대상자(SDN List)는 아래에서 확인\n"
    "1. https://www.treasury.gov/ofac/downloads/sdnlist.pdf\n"
    "2. 기타 문의처\n"
    "1067. Not A Listed Person\n"
)


class TestRecognize:
    """End-to-end recognition"""

    def test_document_count_with_reference_appendix(self):
        """Test 1066 entries are recognized and the appendix is ignored"""
        text = NOTICE_HEADER + numbered(1066) + REFERENCE_BLOCK
        result = recognize(text)

        assert result.accepted is True
        assert result.total == 1066
        assert result.expected == 1066
        assert result.expected_origin == EXPECTED_DOCUMENT
        assert [i.no for i in result.items] == list(range(1, 1067))
        assert result.items[-1].name == "Person Number1066 (born 1970, Tehran)"
        assert "참고" not in result.items[-1].name
        assert result.note == "parsed_ok_expected(expected=1066, got=1066, maxNo=1066)"

    def test_idempotent(self):
        text = NOTICE_HEADER + numbered(1066) + REFERENCE_BLOCK
        first = recognize(text)
        second = recognize(text)

        assert [(i.no, i.name) for i in first.items] == [(i.no, i.name) for i in second.items]

    def test_override_wins_over_document_phrase(self):
        text = NOTICE_HEADER + numbered(1066)
        result = recognize(text, expected_override=1000)

        assert result.expected == 1000
        assert result.expected_origin == EXPECTED_OVERRIDE
        assert result.total == 1000

    def test_low_confidence_publishes_nothing(self):
        text = "제한대상자 (5명)\n" + numbered(5)
        result = recognize(text)

        assert result.accepted is False
        assert result.items == []
        assert result.total == 0
        assert result.found == 5
        assert result.note == "parsed_low_confidence(got=5, expected=5)"

    def test_gaps_renumbered_densely(self):
        """Test entries missing from the document do not leave holes"""
        lines = [f"{i}. Person Number{i} (born 1970)" for i in range(1, 31) if i != 7]
        result = recognize("대상자 (30명)\n" + '\n'.join(lines))

        assert result.total == 29
        assert [i.no for i in result.items] == list(range(1, 30))
        assert result.items[6].source_index == 8
        assert result.max_index == 30

    def test_inferred_expected_count(self):
        text = "제한대상자 명단\n" + numbered(60)
        result = recognize(text)

        assert result.expected == 60
        assert result.expected_origin == EXPECTED_INFERRED
        assert result.total == 60

    def test_no_expected_count(self):
        text = "붙임\n" + numbered(25)
        result = recognize(text)

        assert result.expected is None
        assert result.total == 25
        assert result.note == "parsed_ok_no_expected(got=25)"

    def test_to_entries(self):
        result = recognize(NOTICE_HEADER + numbered(1066))
        entries = result.to_entries()

        assert len(entries) == 1066
        assert entries[0].uid == "KOFIU-RESTRICTED-1"
        assert entries[0].no == 1
        assert entries[0].type.value == "Unknown"


class TestBlocks:
    """Block enumeration and filtering"""

    def test_year_like_indexes_rejected(self):
        text = "1. Alpha Person\n2023. Annual report line\n2. Beta Person"
        by_index, seen = enumerate_blocks(text, RecognizerConfig())

        assert sorted(by_index) == [1, 2]
        assert seen == 3

    def test_longest_block_kept_per_index(self):
        text = "1. Short\n1. A much longer block for the same index\n2. Other"
        by_index, _ = enumerate_blocks(text, RecognizerConfig())

        assert by_index[1] == "A much longer block for the same index"

    @pytest.mark.parametrize("block,rule", [
        ("x", 'too_short'),
        ("제3조 (정의)", 'article_heading'),
        ("금융위원회 위원장", 'agency_name'),
        ("이 고시는 공포한 날부터 시행한다", 'notice_word'),
        ("부칙", 'addendum'),
        ("금융거래등 제한 내용", 'restriction_content_heading'),
        ("지정 취소 대상", 'revocation_heading'),
    ])
    def test_boilerplate_rules(self, block, rule):
        assert boilerplate_rule(block) == rule

    def test_listed_name_is_not_boilerplate(self):
        assert boilerplate_rule("Person Number1 (born 1970, Tehran)") is None

    def test_bare_reference_word_is_not_a_marker(self):
        text = "1. 참고인 진술 관련 인물\n2. Other"

        assert cut_reference_block(text) == text

    def test_sdn_url_marker(self):
        text = "1. Alpha\nsee www.treasury.gov/ofac/downloads/sdnlist.pdf\n2. Beta"

        assert cut_reference_block(text) == "1. Alpha\nsee www.treasury.gov/"


class TestExpectedCount:
    """Expected-count resolution"""

    def test_count_phrase_with_commas(self):
        count, _ = find_count_phrase("대상자 (1,066 명)")

        assert count == 1066

    def test_labelled_phrase_preferred(self):
        text = "개정 (3명) ... 제한대상자 (120명)"
        count, position = find_count_phrase(text)

        assert count == 120
        assert text[position] == '('

    def test_infer_skips_years_and_stops_at_end_keyword(self):
        lines = ["금융거래등 제한대상자"] + [f"{i}. Name{i}" for i in range(1, 61)]
        lines += ["2024. 1. 1.", "부칙", "99. 이 고시는 시행한다"]
        cfg = RecognizerConfig()

        assert infer_expected('\n'.join(lines), cfg) == 60

    def test_infer_out_of_range(self):
        text = "대상자\n" + '\n'.join(f"{i}. Name" for i in range(1, 11))

        assert infer_expected(text, RecognizerConfig()) is None


class TestScoring:
    """Candidate scoring and early stop"""

    def test_exact_match_beats_larger_total(self):
        exact = RecognitionResult(expected=100)
        exact.items = [None] * 100
        bigger = RecognitionResult(expected=100)
        bigger.items = [None] * 140

        assert score_result(exact) > score_result(bigger)

    def test_no_expected_scores_by_volume(self):
        result = RecognitionResult()
        result.items = [None] * 30

        assert score_result(result) == 30

    def test_should_stop_early(self):
        cfg = RecognizerConfig()
        near = RecognitionResult(expected=100)
        near.items = [None] * 99
        far = RecognitionResult(expected=100)
        far.items = [None] * 90

        assert should_stop_early(near, cfg) is True
        assert should_stop_early(far, cfg) is False
        assert should_stop_early(RecognitionResult(), cfg) is False
