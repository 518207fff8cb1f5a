"""
Unit tests for the VASP registry workbook parser
"""

import io
import pytest
from datetime import datetime
from pathlib import Path

import openpyxl

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from pipeline_errors import ParseError
from tabular_parser import (
    cell_text, fill_merged_ranges, find_base_date, parse_expired_note, parse_registry,
    parse_registry_grid, registry_to_entries, resolve_columns, split_expired_item
)


EXPIRED_NOTE = "※ 신고 유효기간 만료된 미갱신 사업자 : 한빗코(주식회사 한빗코코리아), 프로비트(오션스 주식회사)"


def build_workbook(rows=27, first_service=None, with_note=True, duplicate_of=5) -> bytes:
    """Registry workbook with a two-row merged header starting at Excel row 5"""
    wb = openpyxl.Workbook()
    ws = wb.active
    ws['A1'] = "가상자산사업자 신고 현황"
    ws['A2'] = "(2024. 3. 15. 기준)"

    ws['A5'] = "번호"
    ws.merge_cells('A5:A6')
    ws['B5'] = "사업자 정보"
    ws.merge_cells('B5:D5')
    ws['B6'] = "서비스명"
    ws['C6'] = "법인명"
    ws['D6'] = "대표자"

    for i in range(1, rows + 1):
        r = 6 + i
        if i == rows and duplicate_of:
            service, company, ceo = f"서비스{duplicate_of}", f"법인{duplicate_of}", f"대표{duplicate_of}"
        else:
            service, company, ceo = f"서비스{i}", f"법인{i}", f"대표{i}"
        if i == 1 and first_service is not None:
            service = first_service
        ws.cell(row=r, column=1, value=i)
        ws.cell(row=r, column=2, value=service)
        ws.cell(row=r, column=3, value=company)
        ws.cell(row=r, column=4, value=ceo)

    footer = 6 + rows + 2
    ws.cell(row=footer, column=1, value="※ 사업자 순서는 신고수리일 순")
    if with_note:
        ws.cell(row=footer + 1, column=1, value=EXPIRED_NOTE)

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


class TestParseRegistry:
    """Tests for whole-workbook parsing"""

    def test_rows_dedupe_and_numbering(self):
        """Test 27 rows with one duplicate yield 26 records numbered 1..26"""
        registry = parse_registry(build_workbook())

        assert len(registry.normal) == 26
        assert [r.no for r in registry.normal] == list(range(1, 27))
        assert registry.normal[0].service == "서비스1"
        assert registry.normal[0].company == "법인1"
        assert registry.normal[0].ceo == "대표1"

    def test_columns_resolved_through_merged_header(self):
        registry = parse_registry(build_workbook())

        assert registry.columns == {'service': 1, 'company': 2, 'executive': 3}

    def test_base_date(self):
        registry = parse_registry(build_workbook())

        assert registry.base_date == "2024-03-15T00:00:00.000Z"

    def test_expired_note(self):
        registry = parse_registry(build_workbook())

        assert registry.expired_note_found is True
        assert [r.no for r in registry.expired] == [1001, 1002]
        assert registry.expired[0].company == "주식회사 한빗코코리아(한빗코)"
        assert registry.expired[1].company == "오션스 주식회사(프로비트)"

    def test_without_expired_note(self):
        registry = parse_registry(build_workbook(with_note=False))

        assert registry.expired_note_found is False
        assert registry.expired == []

    def test_non_hangul_first_service_rejected(self):
        """Test a misaligned service column aborts the parse"""
        with pytest.raises(ParseError, match="misaligned"):
            parse_registry(build_workbook(first_service="ABC Exchange"))

    def test_numeric_service_rejected(self):
        data = build_workbook()
        wb = openpyxl.load_workbook(io.BytesIO(data))
        wb.active.cell(row=10, column=2, value="12345")
        buf = io.BytesIO()
        wb.save(buf)

        with pytest.raises(ParseError, match="numeric"):
            parse_registry(buf.getvalue())

    def test_not_a_workbook(self):
        with pytest.raises(ParseError, match="could not be opened"):
            parse_registry(b"not a workbook at all")


class TestGridHelpers:
    """Tests for grid-level helpers"""

    def test_fill_merged_ranges(self):
        grid = [["A", None, None], [None, None, "x"]]
        fill_merged_ranges(grid, [(0, 0, 1, 2)])

        assert grid == [["A", "A", "A"], ["A", "A", "x"]]

    def test_split_header_words_joined(self):
        grid = [
            ["번호", "서비스", "회사", "대표"],
            ["", "명", "명", "자"],
            [1, "업비트", "두나무 주식회사", "이석우"],
        ]

        columns = resolve_columns(grid, [0, 1])

        assert columns == {'service': 1, 'company': 2, 'executive': 3}

    def test_missing_company_column(self):
        grid = [["서비스명", "비고"], ["서비스명", "비고"], ["업비트", "-"]]

        with pytest.raises(ParseError, match="company"):
            resolve_columns(grid, [0, 1])

    def test_legend_row_stops_data(self):
        grid = [
            ["서비스명", "법인명"],
            ["", ""],
            ["업비트", "두나무"],
            ["범례 안내", "범례 안내"],
            ["빗썸", "빗썸코리아"],
        ]
        registry = parse_registry_grid(grid, header_rows=(0, 1))

        assert [r.company for r in registry.normal] == ["두나무"]

    def test_cell_text(self):
        assert cell_text(None) == ''
        assert cell_text(3.0) == '3'
        assert cell_text(" a ") == 'a'
        assert cell_text(datetime(2024, 1, 2)) == '2024.01.02'

    def test_base_date_from_datetime_cell(self):
        grid = [["기준일", datetime(2023, 12, 31, 9, 30)]]

        assert find_base_date(grid) == "2023-12-31T00:00:00.000Z"

    def test_base_date_absent(self):
        assert find_base_date([["no date here"]]) is None


class TestExpiredItems:
    """Tests for lapsed-registration footnote items"""

    @pytest.mark.parametrize("raw,service,company", [
        ("코인빗(주식회사 익스바)", "코인빗", "주식회사 익스바"),
        ("비트나인(BITNINE)(주식회사 비트나인)", "비트나인(BITNINE)", "주식회사 비트나인"),
        ("플랫타익스체인지", "플랫타익스체인지", ""),
        ("", "", ""),
    ])
    def test_split_expired_item(self, raw, service, company):
        assert split_expired_item(raw) == {'service': service, 'company': company}

    def test_parse_expired_note_numbering(self):
        note = "※ 신고 유효기간 만료된 미갱신 사업자 : 가(A), 나(B), 다"
        records = parse_expired_note(note)

        assert [r.no for r in records] == [1001, 1002, 1003]
        assert [r.company for r in records] == ["A(가)", "B(나)", "다"]


class TestEntries:
    """Tests for SanctionEntry conversion"""

    def test_registry_to_entries(self):
        registry = parse_registry(build_workbook())
        entries = registry_to_entries(registry.normal)

        assert len(entries) == 26
        assert entries[0].uid == "KOFIU-VASP-1"
        assert entries[0].name == "법인1"
        assert entries[0].remark == "서비스1"
        assert entries[0].no == 1
        assert "CEO: 대표1" in entries[0].full_text
