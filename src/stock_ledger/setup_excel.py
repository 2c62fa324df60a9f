"""Bootstrap and header checks for the stock ledger workbook.

Run as ``stock-ledger-setup`` to create the workbook named by ``[System]
DataFile``, or with ``--check`` to confirm that an existing workbook still has
the sheets and header rows the data layer expects. Tests use
:func:`create_master_workbook` directly.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.workbook import Workbook

from . import data_manager, log
from .data_manager import MOVEMENT_COLUMNS, MOVEMENTS_SHEET, PERIOD_COLUMNS, STOCK_PERIODS_SHEET

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    STOCK_PERIODS_SHEET: PERIOD_COLUMNS,
    MOVEMENTS_SHEET: MOVEMENT_COLUMNS,
}

MIN_COLUMN_WIDTH = 12


def load_settings(config_path: Path) -> data_manager.ConfigSettings:
    """Parse ``config_path`` with the same rules the ledger uses at runtime."""

    config_path = config_path.expanduser().resolve()
    parser = data_manager.read_config(config_path)
    return data_manager.parse_settings(parser, base_path=config_path.parent)


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty ledger workbook at ``destination``.

    Each sheet gets a bold, frozen header row sized to its column names.

    Args:
        destination (Path): Where the workbook is written.
        sheet_columns (Mapping[str, Sequence[str]]): Header row per sheet.
        overwrite (bool): Replace an existing file instead of refusing.

    Returns:
        Path: The resolved destination.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing ledger workbook: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    # openpyxl always starts with a placeholder sheet.
    workbook.remove(workbook.active)

    header_font = Font(bold=True)
    for sheet_name, columns in sheet_columns.items():
        sheet = workbook.create_sheet(title=sheet_name)
        sheet.append(list(columns))
        for index, name in enumerate(columns, start=1):
            sheet.cell(row=1, column=index).font = header_font
            sheet.column_dimensions[get_column_letter(index)].width = max(MIN_COLUMN_WIDTH, len(name) + 2)
        sheet.freeze_panes = "A2"

    data_manager.save_workbook(workbook, destination)
    log.info("Created ledger workbook '%s'", destination)
    return destination


def check_headers(
    workbook: Workbook,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
) -> list[str]:
    """Return a description of every sheet whose header row is not as expected."""

    problems = []
    for sheet_name, columns in sheet_columns.items():
        if sheet_name not in workbook.sheetnames:
            problems.append(f"missing sheet '{sheet_name}'")
            continue
        header = next(workbook[sheet_name].iter_rows(min_row=1, max_row=1, values_only=True), ())
        found = tuple(value for value in header if value is not None)
        if found != tuple(columns):
            problems.append(f"sheet '{sheet_name}' header {list(found)} != {list(columns)}")
    return problems


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize or check the stock ledger workbook")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--force", action="store_true", help="Overwrite the target workbook if it already exists.")
    mode.add_argument("--check", action="store_true", help="Only verify the sheets of an existing workbook.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Stock Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        settings = load_settings(config_path)
        if args.check:
            workbook = openpyxl.load_workbook(settings.data_file, read_only=True)
            try:
                problems = check_headers(workbook)
            finally:
                workbook.close()
            for problem in problems:
                print(f"[ERROR] {problem}")
            if problems:
                return 1
            print(f"\n[OK] '{settings.data_file}' matches the ledger layout.")
            return 0
        output_path = create_master_workbook(settings.data_file, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
