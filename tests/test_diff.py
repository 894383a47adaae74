"""
Workbook diff engine tests: value equality, the comparison algorithm over
in-memory models, and model extraction from real packages.
"""

import datetime
import os
import tempfile
import unittest
import zipfile

import openpyxl

import sheet_unprotect
from sheet_unprotect import (
    Cell,
    CellError,
    CellValueMismatch,
    Dimension,
    EmptinessMismatch,
    WorkbookModel,
    WorksheetCountMismatch,
    WorksheetModel,
)


def _sheet(name: str, values: dict) -> WorksheetModel:
    return WorksheetModel.from_cells(name, {coord: Cell(v) for coord, v in values.items()})


def _book(*sheets: WorksheetModel) -> WorkbookModel:
    return WorkbookModel(worksheets=list(sheets))


def _write_workbook(path: str, sheets: dict) -> None:
    wb = openpyxl.Workbook()
    wb.remove(wb.active)
    for title, cells in sheets.items():
        ws = wb.create_sheet(title)
        for ref, value in cells.items():
            ws[ref] = value
    wb.save(path)


class TestValueEquality(unittest.TestCase):
    def test_same_kind(self):
        self.assertTrue(sheet_unprotect.values_equal(None, None))
        self.assertTrue(sheet_unprotect.values_equal(1, 1.0))
        self.assertTrue(sheet_unprotect.values_equal("abc", "abc"))
        self.assertTrue(sheet_unprotect.values_equal(True, True))
        self.assertTrue(sheet_unprotect.values_equal(CellError("#N/A"), CellError("#N/A")))
        self.assertTrue(
            sheet_unprotect.values_equal(datetime.datetime(2024, 1, 2), datetime.datetime(2024, 1, 2))
        )

    def test_kind_mismatch(self):
        self.assertFalse(sheet_unprotect.values_equal(True, 1))
        self.assertFalse(sheet_unprotect.values_equal(0, False))
        self.assertFalse(sheet_unprotect.values_equal("1", 1))
        self.assertFalse(sheet_unprotect.values_equal(None, ""))
        self.assertFalse(sheet_unprotect.values_equal(None, 0))
        self.assertFalse(sheet_unprotect.values_equal("#N/A", CellError("#N/A")))
        self.assertFalse(
            sheet_unprotect.values_equal(datetime.date(2024, 1, 2), datetime.datetime(2024, 1, 2))
        )

    def test_exact_text_and_numbers(self):
        self.assertFalse(sheet_unprotect.values_equal("abc", "abc "))
        self.assertFalse(sheet_unprotect.values_equal("abc", "ABC"))
        self.assertFalse(sheet_unprotect.values_equal(0.1 + 0.2, 0.3))


class TestDimension(unittest.TestCase):
    def test_enclosing(self):
        self.assertIsNone(Dimension.enclosing([]))
        self.assertEqual(Dimension.enclosing([(3, 2), (1, 5), (2, 1)]), Dimension(1, 1, 3, 5))

    def test_union(self):
        self.assertEqual(Dimension(2, 2, 3, 3).union(Dimension(1, 3, 2, 6)), Dimension(1, 2, 3, 6))

    def test_start_must_not_exceed_end(self):
        with self.assertRaises(ValueError):
            Dimension(3, 1, 2, 1)
        with self.assertRaises(ValueError):
            Dimension(1, 4, 1, 2)
        with self.assertRaises(ValueError):
            Dimension(0, 1, 1, 1)


class TestCompareModels(unittest.TestCase):
    def test_identical(self):
        a = _book(_sheet("Sheet1", {(1, 1): 1, (2, 1): "x"}))
        b = _book(_sheet("Sheet1", {(1, 1): 1, (2, 1): "x"}))
        self.assertEqual(sheet_unprotect.compare_workbooks(a, b), [])

    def test_count_mismatch_short_circuits(self):
        a = _book(_sheet("A", {(1, 1): 1}), _sheet("B", {}))
        b = _book(_sheet("A", {(1, 1): 2}), _sheet("B", {(1, 1): 1}), _sheet("C", {}))
        result = sheet_unprotect.compare_workbooks(a, b)
        self.assertEqual(result, [WorksheetCountMismatch(2, 3)])
        self.assertEqual(result[0].kind, "worksheet-count-mismatch")
        self.assertEqual(result[0].label, "StructureMismatchError")

    def test_both_empty(self):
        self.assertEqual(sheet_unprotect.compare_workbooks(_book(_sheet("E", {})), _book(_sheet("E", {}))), [])

    def test_emptiness_mismatch_skips_cells(self):
        a = _book(_sheet("Sheet1", {}), _sheet("Sheet2", {(1, 1): 1}))
        b = _book(_sheet("Sheet1", {(1, 1): 1, (4, 4): 2}), _sheet("Sheet2", {(1, 1): 3}))
        self.assertEqual(
            sheet_unprotect.compare_workbooks(a, b),
            [EmptinessMismatch("Sheet1", 0), CellValueMismatch("Sheet2", 1, 1, 1, 3)],
        )

    def test_single_cell_change(self):
        a = _book(_sheet("Sheet1", {(1, 1): 1, (2, 1): 2}))
        b = _book(_sheet("Sheet1", {(1, 1): 5, (2, 1): 2}))
        result = sheet_unprotect.compare_workbooks(a, b)
        self.assertEqual(result, [CellValueMismatch("Sheet1", 1, 1, 1, 5)])
        self.assertEqual(result[0].kind, "cell-value-mismatch")

    def test_union_rectangle_catches_cells_outside_either_side(self):
        a = _book(_sheet("S", {(2, 2): "a"}))
        b = _book(_sheet("S", {(2, 2): "a", (4, 5): "new"}))
        self.assertEqual(sheet_unprotect.compare_workbooks(a, b), [CellValueMismatch("S", 4, 5, None, "new")])
        self.assertEqual(sheet_unprotect.compare_workbooks(b, a), [CellValueMismatch("S", 4, 5, "new", None)])

    def test_order_is_sheet_then_row_then_column(self):
        a = _book(
            _sheet("First", {(1, 1): 0, (1, 2): 0, (2, 1): 0}),
            _sheet("Second", {(1, 1): 0}),
        )
        b = _book(
            _sheet("First", {(1, 1): 1, (1, 2): 1, (2, 1): 1}),
            _sheet("Second", {(1, 1): 1}),
        )
        result = sheet_unprotect.compare_workbooks(a, b)
        self.assertEqual(
            [(d.sheet, d.row, d.col) for d in result],
            [("First", 1, 1), ("First", 1, 2), ("First", 2, 1), ("Second", 1, 1)],
        )

    def test_formula_text_does_not_participate(self):
        a = _book(WorksheetModel.from_cells("S", {(1, 1): Cell(4, "=2*2")}))
        b = _book(WorksheetModel.from_cells("S", {(1, 1): Cell(4)}))
        self.assertEqual(sheet_unprotect.compare_workbooks(a, b), [])

    def test_value_kinds_are_compared(self):
        a = _book(_sheet("S", {(1, 1): True, (1, 2): "1"}))
        b = _book(_sheet("S", {(1, 1): 1, (1, 2): 1}))
        self.assertEqual(
            sheet_unprotect.compare_workbooks(a, b),
            [CellValueMismatch("S", 1, 1, True, 1), CellValueMismatch("S", 1, 2, "1", 1)],
        )


class TestComparePackages(unittest.TestCase):
    def test_count_mismatch(self):
        with tempfile.TemporaryDirectory() as td:
            a = os.path.join(td, "a.xlsx")
            b = os.path.join(td, "b.xlsx")
            _write_workbook(a, {"S1": {"A1": 1}, "S2": {}})
            _write_workbook(b, {"S1": {"A1": 9}, "S2": {}, "S3": {"A1": 1}})
            self.assertEqual(sheet_unprotect.compare(a, b), [WorksheetCountMismatch(2, 3)])

    def test_single_cell_change(self):
        with tempfile.TemporaryDirectory() as td:
            a = os.path.join(td, "a.xlsx")
            b = os.path.join(td, "b.xlsx")
            _write_workbook(a, {"Sheet1": {"A1": 1, "A2": 2}})
            _write_workbook(b, {"Sheet1": {"A1": 5, "A2": 2}})
            self.assertEqual(sheet_unprotect.compare(a, b), [CellValueMismatch("Sheet1", 1, 1, 1, 5)])

    def test_emptiness_asymmetry(self):
        with tempfile.TemporaryDirectory() as td:
            a = os.path.join(td, "a.xlsx")
            b = os.path.join(td, "b.xlsx")
            _write_workbook(a, {"Sheet1": {}})
            _write_workbook(b, {"Sheet1": {"C3": "filled"}})
            self.assertEqual(sheet_unprotect.compare(a, b), [EmptinessMismatch("Sheet1", 0)])

    def test_backup_extension_is_accepted(self):
        with tempfile.TemporaryDirectory() as td:
            a = os.path.join(td, "Book.xlsx")
            _write_workbook(a, {"Sheet1": {"A1": "x"}})
            backup = sheet_unprotect.snapshot(a)
            self.assertTrue(backup.endswith(".xlsx.bak"))
            self.assertEqual(sheet_unprotect.compare(backup, a), [])

    def test_not_a_package(self):
        with tempfile.TemporaryDirectory() as td:
            a = os.path.join(td, "a.xlsx")
            with open(a, "wb") as fh:
                fh.write(b"nope")
            with self.assertRaises(sheet_unprotect.ArchiveFormatError):
                sheet_unprotect.load_workbook_model(a)


class TestLoadWorkbookModel(unittest.TestCase):
    SHEET_XML = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<worksheet xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main">'
        '<dimension ref="B2:D2"/>'
        "<sheetData>"
        '<row r="2">'
        '<c r="B2"><v>2</v></c>'
        '<c r="C2"><f>B2*2</f><v>4</v></c>'
        '<c r="D2" t="e"><v>#DIV/0!</v></c>'
        "</row>"
        "</sheetData>"
        '<sheetProtection sheet="1" objects="1"/>'
        "</worksheet>"
    ).encode("utf-8")

    def _book_with_raw_sheet(self, td: str) -> str:
        path = os.path.join(td, "raw.xlsx")
        _write_workbook(path, {"Data": {"A1": 0}, "Empty": {}})
        with zipfile.ZipFile(path, "r") as zin:
            entries = [(item, zin.read(item)) for item in zin.infolist()]
        with zipfile.ZipFile(path, "w") as zout:
            for item, payload in entries:
                if item.filename == "xl/worksheets/sheet1.xml":
                    payload = self.SHEET_XML
                zout.writestr(item, payload)
        return path

    def test_cached_values_formulas_and_errors(self):
        with tempfile.TemporaryDirectory() as td:
            model = sheet_unprotect.load_workbook_model(self._book_with_raw_sheet(td))
        self.assertEqual([ws.name for ws in model.worksheets], ["Data", "Empty"])
        data, empty = model.worksheets
        self.assertEqual(data.dimension, Dimension(2, 2, 2, 4))
        self.assertEqual(data.cells[(2, 2)], Cell(2))
        self.assertEqual(data.cells[(2, 3)], Cell(4, "=B2*2"))
        self.assertEqual(data.cells[(2, 4)].value, CellError("#DIV/0!"))
        self.assertIsNone(data.value_at(1, 1))
        self.assertIsNone(empty.dimension)
        self.assertEqual(empty.cells, {})

    def test_unprotecting_keeps_cached_formula_results(self):
        with tempfile.TemporaryDirectory() as td:
            path = self._book_with_raw_sheet(td)
            backup = sheet_unprotect.snapshot(path)
            result = sheet_unprotect.mutate(path)
            self.assertEqual(result.modified_parts, ["xl/worksheets/sheet1.xml"])
            self.assertEqual(sheet_unprotect.compare(backup, path), [])


if __name__ == "__main__":
    unittest.main()
