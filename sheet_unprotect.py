#!/usr/bin/env python3
"""Worksheet protection remover for Excel workbooks.

This script removes the ``<sheetProtection>`` element from every worksheet
inside an XLSX package without launching Excel, then re-reads the original
and the edited workbook and compares every cell value to prove that nothing
but the protection changed.

    # Show usage:
    python sheet_unprotect.py --help

    # Unprotect Book.xlsx in place, after creating a "Book.xlsx.bak" backup:
    python sheet_unprotect.py Book.xlsx

    # Pick a workbook from the current directory interactively:
    python sheet_unprotect.py

    # Keep the changes even if the verification finds differences:
    python sheet_unprotect.py --yes Book.xlsx

Licensed under GNU GPL v3.
"""
from __future__ import annotations

import argparse
import datetime as _dt
import glob
import numbers
import os
import re
import shutil
import sys
import tempfile
import warnings
import zipfile
import zlib
from dataclasses import dataclass, field, replace
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Optional, Sequence, Tuple
from xml.etree import ElementTree

try:
    import olefile
    import openpyxl
    from lxml import etree
    from openpyxl.utils import get_column_letter
    from openpyxl.utils.exceptions import InvalidFileException
except ImportError as exc:  # pragma: no cover - dependency guard
    raise SystemExit(
        f"The '{exc.name}' package is required. Install it via 'pip install olefile lxml openpyxl'."
    ) from exc


# Worksheet parts live directly under xl/worksheets/ (sheet1.xml, sheet2.xml, ...)
WORKSHEET_PART_PATTERN = re.compile(r"^xl/worksheets/[^/]+\.xml$", re.IGNORECASE)
PROTECTION_TAG = "sheetProtection"
BACKUP_SUFFIX = ".bak"
WORKBOOK_GLOB = "*.xlsx"
WORK_DIR_PREFIX = ".sheet-unprotect-"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class UnprotectError(Exception):
    """Base class for fatal errors raised while unprotecting a workbook."""


class ArchiveFormatError(UnprotectError):
    """The package is not a readable zip archive."""


class XmlParseError(UnprotectError):
    """A part of the package is not well-formed XML."""

    def __init__(self, message: str, part: Optional[str] = None):
        super().__init__(message)
        self.part = part


# ---------------------------------------------------------------------------
# Archive transcoding
# ---------------------------------------------------------------------------

@dataclass
class Part:
    """One entry of a zip package."""

    path: str
    data: bytes
    info: Optional[zipfile.ZipInfo] = None


def _describe_bad_archive(package_path: str, exc: BaseException) -> str:
    if os.path.isfile(package_path) and olefile.isOleFile(package_path):
        return (
            f"{package_path} is an OLE compound document (a password-encrypted "
            "or legacy .xls workbook), not a zip package"
        )
    return f"{package_path} is not a valid zip package: {exc}"


def unpack(package_path: str) -> List[Part]:
    """Read every entry of ``package_path`` into memory, in archive order."""
    try:
        with zipfile.ZipFile(package_path, "r") as zin:
            return [Part(path=item.filename, data=zin.read(item), info=item) for item in zin.infolist()]
    except (zipfile.BadZipFile, zlib.error, NotImplementedError) as exc:
        raise ArchiveFormatError(_describe_bad_archive(package_path, exc)) from exc
    except OSError as exc:
        raise ArchiveFormatError(f"Unable to read package {package_path}: {exc}") from exc


def repack(parts: Iterable[Part], output_path: str) -> None:
    """Write ``parts`` to a new zip archive at ``output_path``.

    Parts that still carry their original ``ZipInfo`` keep its compression
    method and timestamp; parts without one are deflated.
    """
    with zipfile.ZipFile(output_path, "w") as zout:
        for part in parts:
            if part.info is not None:
                zout.writestr(part.info, part.data)
            else:
                zout.writestr(part.path, part.data, compress_type=zipfile.ZIP_DEFLATED)


# ---------------------------------------------------------------------------
# Protection stripping
# ---------------------------------------------------------------------------

def _xml_parser() -> etree.XMLParser:
    return etree.XMLParser(remove_blank_text=False, resolve_entities=False, no_network=True, huge_tree=True)


def strip(xml_content: bytes, part: Optional[str] = None) -> Tuple[bytes, bool]:
    """Remove the protection element from one worksheet part.

    Returns ``(content, was_modified)``. When the root element has no direct
    ``sheetProtection`` child in its own namespace, ``xml_content`` is
    returned as-is.
    """
    try:
        root = etree.fromstring(xml_content, _xml_parser())
    except etree.XMLSyntaxError as exc:
        where = part or "worksheet part"
        raise XmlParseError(f"{where} is not well-formed XML: {exc}", part=part) from exc

    namespace = etree.QName(root).namespace
    target = f"{{{namespace}}}{PROTECTION_TAG}" if namespace else PROTECTION_TAG
    protection = next((child for child in root if child.tag == target), None)
    if protection is None:
        return xml_content, False

    root.remove(protection)
    tree = root.getroottree()
    docinfo = tree.docinfo
    content = etree.tostring(
        tree,
        xml_declaration=True,
        encoding=docinfo.encoding or "UTF-8",
        standalone=docinfo.standalone,
    )
    return content, True


# ---------------------------------------------------------------------------
# Mutation pipeline
# ---------------------------------------------------------------------------

@dataclass
class MutationResult:
    """Summary of one :func:`mutate` run."""

    package_path: str
    worksheet_parts: List[str] = field(default_factory=list)
    modified_parts: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.modified_parts)


def is_worksheet_part(path: str) -> bool:
    return bool(WORKSHEET_PART_PATTERN.match(path))


def _commit_parts(parts: Sequence[Part], target_path: str) -> None:
    # Staging dir must share the target's filesystem for os.replace.
    parent_dir = os.path.dirname(os.path.abspath(target_path))
    with tempfile.TemporaryDirectory(prefix=WORK_DIR_PREFIX, dir=parent_dir) as work_dir:
        staged = os.path.join(work_dir, os.path.basename(target_path))
        repack(parts, staged)
        shutil.copymode(target_path, staged)
        os.replace(staged, target_path)


def mutate(package_path: str) -> MutationResult:
    """Strip protection from every worksheet of ``package_path`` in place.

    All worksheet parts are processed before anything is written: an
    unreadable archive or a malformed worksheet aborts the run and leaves the
    original file untouched. A package with nothing to strip is deliberately
    not repacked: the bytes on disk already equal what a repack would carry.
    """
    result = MutationResult(package_path=package_path)
    staged: List[Part] = []
    for part in unpack(package_path):
        if is_worksheet_part(part.path):
            result.worksheet_parts.append(part.path)
            data, was_modified = strip(part.data, part=part.path)
            if was_modified:
                part = replace(part, data=data)
                result.modified_parts.append(part.path)
        staged.append(part)

    if result.modified_parts:
        _commit_parts(staged, package_path)
    return result


# ---------------------------------------------------------------------------
# Workbook model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CellError:
    """An error value such as ``#DIV/0!`` or ``#N/A``."""

    code: str

    def __str__(self) -> str:
        return self.code


@dataclass(frozen=True)
class Dimension:
    """Bounding rectangle of the populated cells of a worksheet (1-based)."""

    start_row: int
    start_col: int
    end_row: int
    end_col: int

    def __post_init__(self) -> None:
        if self.start_row < 1 or self.start_col < 1:
            raise ValueError(f"Dimension must start at row/column 1 or later: {self}")
        if self.start_row > self.end_row or self.start_col > self.end_col:
            raise ValueError(f"Dimension start must not exceed its end: {self}")

    @classmethod
    def enclosing(cls, coordinates: Iterable[Tuple[int, int]]) -> Optional["Dimension"]:
        coords = list(coordinates)
        if not coords:
            return None
        rows = [r for r, _ in coords]
        cols = [c for _, c in coords]
        return cls(min(rows), min(cols), max(rows), max(cols))

    def union(self, other: "Dimension") -> "Dimension":
        return Dimension(
            min(self.start_row, other.start_row),
            min(self.start_col, other.start_col),
            max(self.end_row, other.end_row),
            max(self.end_col, other.end_col),
        )


@dataclass(frozen=True)
class Cell:
    value: Any
    formula: Optional[str] = None


@dataclass
class WorksheetModel:
    name: str
    cells: Dict[Tuple[int, int], Cell] = field(default_factory=dict)
    dimension: Optional[Dimension] = None

    @classmethod
    def from_cells(cls, name: str, cells: Dict[Tuple[int, int], Cell]) -> "WorksheetModel":
        populated = [coord for coord, cell in cells.items() if cell.value is not None]
        return cls(name=name, cells=dict(cells), dimension=Dimension.enclosing(populated))

    def value_at(self, row: int, col: int) -> Any:
        cell = self.cells.get((row, col))
        return None if cell is None else cell.value


@dataclass
class WorkbookModel:
    worksheets: List[WorksheetModel] = field(default_factory=list)


def _effective_value(cell: Any) -> Any:
    if cell.data_type == "e":
        return CellError(str(cell.value))
    return cell.value


def _load_values(handle: Any) -> List[Tuple[str, Dict[Tuple[int, int], Cell]]]:
    wb = openpyxl.load_workbook(handle, data_only=True)
    try:
        sheets = []
        for ws in wb.worksheets:
            cells: Dict[Tuple[int, int], Cell] = {}
            for row in ws.iter_rows():
                for cell in row:
                    if cell.value is None:
                        continue
                    cells[(cell.row, cell.column)] = Cell(_effective_value(cell))
            sheets.append((ws.title, cells))
        return sheets
    finally:
        wb.close()


def _load_formulas(handle: Any) -> List[Dict[Tuple[int, int], str]]:
    wb = openpyxl.load_workbook(handle, read_only=True)
    try:
        sheets = []
        for ws in wb.worksheets:
            formulas: Dict[Tuple[int, int], str] = {}
            for row in ws.iter_rows():
                for cell in row:
                    if cell.data_type != "f" or cell.value is None:
                        continue
                    # Array and data-table formulas are objects carrying .text
                    formulas[(cell.row, cell.column)] = str(getattr(cell.value, "text", cell.value))
            sheets.append(formulas)
        return sheets
    finally:
        wb.close()


def load_workbook_model(package_path: str) -> WorkbookModel:
    """Project a package into an ordered worksheet/cell model.

    Values are the ones stored in the file: formula cells contribute their
    cached result, never a recalculation.
    """
    try:
        with open(package_path, "rb") as handle, warnings.catch_warnings():
            # openpyxl warns about every extension it does not understand
            warnings.simplefilter("ignore")
            values = _load_values(handle)
            handle.seek(0)
            formulas = _load_formulas(handle)
    except (zipfile.BadZipFile, zlib.error, InvalidFileException, KeyError) as exc:
        raise ArchiveFormatError(_describe_bad_archive(package_path, exc)) from exc
    except (etree.XMLSyntaxError, ElementTree.ParseError, ValueError, TypeError) as exc:
        raise XmlParseError(f"Unable to parse workbook {package_path}: {exc}") from exc
    except OSError as exc:
        raise ArchiveFormatError(f"Unable to read package {package_path}: {exc}") from exc
    except Exception as exc:
        # openpyxl fails with IndexError, AttributeError, ... on well-formed but inconsistent parts
        raise XmlParseError(f"Unable to read workbook contents of {package_path}: {type(exc).__name__}: {exc}") from exc

    model = WorkbookModel()
    for (title, cells), sheet_formulas in zip(values, formulas):
        for coord, text in sheet_formulas.items():
            if coord in cells:
                cells[coord] = replace(cells[coord], formula=text)
        model.worksheets.append(WorksheetModel.from_cells(title, cells))
    return model


# ---------------------------------------------------------------------------
# Diff engine
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Discrepancy:
    kind: ClassVar[str] = "discrepancy"


@dataclass(frozen=True)
class WorksheetCountMismatch(Discrepancy):
    """Reported (never raised) as a StructureMismatchError finding."""

    kind: ClassVar[str] = "worksheet-count-mismatch"
    label: ClassVar[str] = "StructureMismatchError"

    count_a: int
    count_b: int


@dataclass(frozen=True)
class EmptinessMismatch(Discrepancy):
    kind: ClassVar[str] = "emptiness-mismatch"

    sheet: str
    index: int


@dataclass(frozen=True)
class CellValueMismatch(Discrepancy):
    kind: ClassVar[str] = "cell-value-mismatch"

    sheet: str
    row: int
    col: int
    value_a: Any
    value_b: Any


def _value_kind(value: Any) -> str:
    if value is None:
        return "empty"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, numbers.Number):
        return "number"
    if isinstance(value, str):
        return "text"
    if isinstance(value, CellError):
        return "error"
    if isinstance(value, _dt.datetime):
        return "datetime"
    if isinstance(value, _dt.date):
        return "date"
    if isinstance(value, (_dt.time, _dt.timedelta)):
        return "time"
    return type(value).__name__


def values_equal(a: Any, b: Any) -> bool:
    """Kind-aware equality: ``True`` is not ``1``, ``"1"`` is not ``1``."""
    return _value_kind(a) == _value_kind(b) and a == b


def _compare_worksheets(index: int, ws_a: WorksheetModel, ws_b: WorksheetModel) -> List[Discrepancy]:
    if ws_a.dimension is None and ws_b.dimension is None:
        return []
    if ws_a.dimension is None or ws_b.dimension is None:
        return [EmptinessMismatch(sheet=ws_a.name, index=index)]

    # Union, not intersection: a cell populated on one side only must show up
    bounds = ws_a.dimension.union(ws_b.dimension)
    found: List[Discrepancy] = []
    for row in range(bounds.start_row, bounds.end_row + 1):
        for col in range(bounds.start_col, bounds.end_col + 1):
            value_a = ws_a.value_at(row, col)
            value_b = ws_b.value_at(row, col)
            if not values_equal(value_a, value_b):
                found.append(CellValueMismatch(ws_a.name, row, col, value_a, value_b))
    return found


def compare_workbooks(workbook_a: WorkbookModel, workbook_b: WorkbookModel) -> List[Discrepancy]:
    """Return every difference between two workbook models, sheet-major then row-major."""
    count_a = len(workbook_a.worksheets)
    count_b = len(workbook_b.worksheets)
    if count_a != count_b:
        return [WorksheetCountMismatch(count_a, count_b)]

    discrepancies: List[Discrepancy] = []
    for index, (ws_a, ws_b) in enumerate(zip(workbook_a.worksheets, workbook_b.worksheets)):
        discrepancies.extend(_compare_worksheets(index, ws_a, ws_b))
    return discrepancies


def compare(package_a: str, package_b: str) -> List[Discrepancy]:
    """Load both packages and compare them cell by cell. Empty list means equivalent."""
    return compare_workbooks(load_workbook_model(package_a), load_workbook_model(package_b))


# ---------------------------------------------------------------------------
# Backup / revert
# ---------------------------------------------------------------------------

def backup_path_for(path: str) -> str:
    return path + BACKUP_SUFFIX


def snapshot(path: str) -> str:
    """Copy ``path`` to its sibling backup and return the backup path."""
    backup_path = backup_path_for(path)
    shutil.copy2(path, backup_path)
    return backup_path


def revert(path: str, backup_path: str) -> None:
    shutil.copy2(backup_path, path)


def discard(backup_path: str) -> None:
    """Commit point. The backup is kept on disk; nothing to do."""


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

FAILED = "failed"
VERIFIED = "verified"
ACCEPTED = "accepted"
REVERTED = "reverted"
VERIFY_FAILED = "verify-failed"
UNVERIFIED = "unverified"


@dataclass
class PipelineOutcome:
    """Result of :func:`run_pipeline`.

    ``failed`` means the original package was never overwritten; every other
    status means the mutation was written (and possibly reverted afterwards).
    """

    path: str
    status: str = FAILED
    backup_path: Optional[str] = None
    mutation: Optional[MutationResult] = None
    discrepancies: List[Discrepancy] = field(default_factory=list)
    error: Optional[BaseException] = None
    reverted: bool = False


Decider = Callable[[List[Discrepancy]], bool]


def run_pipeline(path: str, decide: Optional[Decider] = None, verify: bool = True) -> PipelineOutcome:
    """Snapshot, unprotect, verify, then commit or revert ``path``.

    ``decide`` is only consulted when the verification finds discrepancies;
    returning ``True`` keeps the changes. Without a callback the package is
    reverted.
    """
    outcome = PipelineOutcome(path=path)
    try:
        outcome.backup_path = snapshot(path)
        outcome.mutation = mutate(path)
    except (UnprotectError, OSError) as exc:
        outcome.error = exc
        return outcome

    if not verify:
        outcome.status = UNVERIFIED
        return outcome

    try:
        outcome.discrepancies = compare(outcome.backup_path, path)
    except (UnprotectError, OSError) as exc:
        # The mutation itself succeeded; whether to keep it is up to the caller.
        outcome.error = exc
        outcome.status = VERIFY_FAILED
        return outcome

    if not outcome.discrepancies:
        outcome.status = VERIFIED
        discard(outcome.backup_path)
    elif decide is not None and decide(outcome.discrepancies):
        outcome.status = ACCEPTED
        discard(outcome.backup_path)
    else:
        revert(path, outcome.backup_path)
        outcome.reverted = True
        outcome.status = REVERTED
    return outcome


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_NO_WORKBOOK = 1
EXIT_FAILED = 2
EXIT_REVERTED = 3
EXIT_VERIFY_FAILED = 4

_STATUS_EXIT_CODES = {
    VERIFIED: EXIT_OK,
    ACCEPTED: EXIT_OK,
    UNVERIFIED: EXIT_OK,
    FAILED: EXIT_FAILED,
    REVERTED: EXIT_REVERTED,
    VERIFY_FAILED: EXIT_VERIFY_FAILED,
}


def format_discrepancy(discrepancy: Discrepancy) -> str:
    if isinstance(discrepancy, WorksheetCountMismatch):
        return (
            "Number of worksheets differ between files "
            f"(original: {discrepancy.count_a}, modified: {discrepancy.count_b})."
        )
    if isinstance(discrepancy, EmptinessMismatch):
        return f"Worksheet '{discrepancy.sheet}' differs: one sheet is empty and the other is not."
    if isinstance(discrepancy, CellValueMismatch):
        ref = f"{get_column_letter(discrepancy.col)}{discrepancy.row}"
        return (
            f"Worksheet '{discrepancy.sheet}', Cell [{discrepancy.row},{discrepancy.col}] ({ref}) differs. "
            f"Original: '{_render_value(discrepancy.value_a)}' | Modified: '{_render_value(discrepancy.value_b)}'"
        )
    return repr(discrepancy)


def _render_value(value: Any) -> str:
    return "" if value is None else str(value)


def _format_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Remove worksheet protection from XLSX workbooks")
    parser.add_argument(
        "workbooks",
        nargs="*",
        metavar="workbook",
        help="Workbook(s) to unprotect in place (prompts for one in the current directory if omitted)",
    )
    decision = parser.add_mutually_exclusive_group()
    decision.add_argument(
        "--yes",
        "-y",
        action="store_true",
        dest="accept",
        help="Keep the changes even if verification reports discrepancies",
    )
    decision.add_argument(
        "--revert",
        action="store_true",
        dest="revert",
        help="Restore the backup without asking if verification reports discrepancies",
    )
    parser.add_argument(
        "--no-verify",
        action="store_true",
        dest="no_verify",
        help="Skip the cell-by-cell comparison against the backup",
    )
    return parser


def _select_workbook(directory: str) -> Optional[str]:
    """Interactive picker over the workbooks in ``directory``."""
    candidates = sorted(glob.glob(os.path.join(directory, WORKBOOK_GLOB)))
    if not candidates:
        print("No .xlsx files found in the current directory.")
        return None

    for index, candidate in enumerate(candidates, start=1):
        print(f"{index}: {os.path.basename(candidate)}")
    try:
        answer = input("\nEnter the number of the file you want to process: ")
    except EOFError:
        answer = ""
    try:
        choice = int(answer.strip())
    except ValueError:
        choice = 0
    if not 1 <= choice <= len(candidates):
        print("Invalid selection.")
        return None
    selected = candidates[choice - 1]
    print(f"\nYou selected: {os.path.basename(selected)}")
    return selected


def _make_decider(accept: bool, revert_: bool) -> Decider:
    def decide(discrepancies: List[Discrepancy]) -> bool:
        print("\nDiscrepancies found:")
        for discrepancy in discrepancies:
            print(f"  {format_discrepancy(discrepancy)}")
        if accept:
            return True
        if revert_:
            return False
        try:
            answer = input("\nDo you want to proceed with the changes? (Y/N): ")
        except EOFError:
            return False
        return answer.strip().lower() == "y"

    return decide


def _report(outcome: PipelineOutcome) -> None:
    if outcome.backup_path is None:
        print(
            f"Unable to create backup '{os.path.basename(backup_path_for(outcome.path))}': "
            f"{_format_error(outcome.error)}",
            file=sys.stderr,
        )
        return
    print(f"Backup created at: {outcome.backup_path}")

    if outcome.status == FAILED:
        print(f"Unprotect failed, workbook left unchanged: {_format_error(outcome.error)}", file=sys.stderr)
        return

    mutation = outcome.mutation
    if mutation is not None:
        if mutation.modified_parts:
            print("Protection removed from worksheets:")
            for part in mutation.modified_parts:
                print(f"  - {part}")
        elif mutation.worksheet_parts:
            print("No worksheet was protected; no changes made.")
        else:
            print("No worksheet parts found; workbook left unchanged.")

    if outcome.status == VERIFIED:
        print("Verification successful. No discrepancies found.")
    elif outcome.status == ACCEPTED:
        print("Changes accepted.")
    elif outcome.status == REVERTED:
        print("Reverted to backup.")
    elif outcome.status == VERIFY_FAILED:
        print(
            f"Verification could not run, changes were kept: {_format_error(outcome.error)}",
            file=sys.stderr,
        )


def main(argv: Optional[Iterable[str]] = None) -> int:
    """
    sheet_unprotect.py - Remove sheet protection from every worksheet of an .xlsx workbook.
    usage: sheet_unprotect.py [-h] [--yes | --revert] [--no-verify] [workbook ...]

    Behavior:
        - A "<workbook>.bak" backup is written next to each workbook before it is touched.
        - The workbook is rewritten only if every worksheet part parsed successfully.
        - The result is compared cell by cell with the backup; on discrepancies the user
          is asked whether to keep the changes (see --yes / --revert).

    Exit status:
        0 on success, 1 if no workbook was chosen, 2 on a fatal error (workbook unchanged),
        3 if changes were reverted, 4 if verification could not run.
    """
    parser = build_arg_parser()
    if argv is None:
        args = parser.parse_args()
    else:
        args = parser.parse_args(list(argv))

    workbooks = [os.path.abspath(path) for path in args.workbooks]
    if not workbooks:
        selected = _select_workbook(os.getcwd())
        if selected is None:
            return EXIT_NO_WORKBOOK
        workbooks = [selected]

    for path in workbooks:
        if not os.path.isfile(path):
            parser.error(f"File not found: {path}")

    decide = _make_decider(args.accept, args.revert)
    exit_code = EXIT_OK
    for path in workbooks:
        print(f"\nProcessing {path}")
        outcome = run_pipeline(path, decide=decide, verify=not args.no_verify)
        _report(outcome)
        exit_code = max(exit_code, _STATUS_EXIT_CODES[outcome.status])

    print("\nDone.")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
