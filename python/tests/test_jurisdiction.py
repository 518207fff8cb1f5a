"""
Unit tests for the jurisdiction classifier
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from jurisdiction import explain, is_region_related


class TestAllowRules:
    """Texts that tie a record to South Korea"""

    @pytest.mark.parametrize("text", [
        "ADDRESS:\nSeoul, Korea, South",
        "Nationality: South Korea",
        "located in SOUTH KOREA",
        "Korea,South",
        "Republic of Korea",
        "Korea, Republic of",
    ])
    def test_positive(self, text):
        assert is_region_related(text) is True

    def test_rule_name_reported(self):
        result = explain("Busan, Korea, South")

        assert result.related is True
        assert result.rule == 'south_korea_adjacent'
        assert result.vetoed is False


class TestVetoRules:
    """North Korea indicators always win"""

    @pytest.mark.parametrize("text", [
        "DPRK",
        "Pyongyang",
        "North Korea",
        "Korea, North",
        "Democratic People's Republic of Korea",
        "Democratic Peoples Republic of Korea",
    ])
    def test_negative(self, text):
        assert is_region_related(text) is False

    def test_veto_beats_allow(self):
        """Test a text naming both Koreas is not related"""
        text = "Offices in Seoul, Korea, South and Pyongyang, Korea, North"
        result = explain(text)

        assert result.related is False
        assert result.vetoed is True

    def test_formal_dprk_name_is_not_republic_of_korea(self):
        assert explain("Democratic People's Republic of Korea").rule == 'dprk_formal_name'


class TestNoMatch:
    """Texts that do not qualify"""

    @pytest.mark.parametrize("text", [
        "",
        None,
        "Korea",
        "south of the border, somewhere in Korea",
        "Koreatown, Los Angeles",
    ])
    def test_not_related(self, text):
        assert is_region_related(text) is False

    def test_no_rule_when_nothing_matches(self):
        result = explain("Tehran, Iran")

        assert result.related is False
        assert result.rule is None
