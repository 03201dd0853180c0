#!/usr/bin/env python3
"""Generate messy point-of-sale exports for manual and performance testing.

The generated files look like real POS / accounting exports:
- A few title / report-metadata rows above the header
- Header row (Date, Bill No, Item, Qty, Item Net Amt, ...)
- Item rows, several per bill
- Optional "Sub Total" rows after each bill and a "Grand Total" row at the end
- Optional NA bill placeholders and blank separator rows

Output format follows the extension: .csv or .xlsx.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

import numpy as np
import pandas as pd

HEADER = ["Date", "Bill No", "Item", "Qty", "Item Net Amt", "Payment"]
ITEMS = ["Coffee", "Tea", "Sandwich", "Muffin", "Juice", "Salad", "Cookie"]
PAYMENTS = ["Cash", "Card", "UPI"]


def generate_export_rows(
    bills: int,
    seed: int = 42,
    title_rows: int = 2,
    subtotals: bool = True,
    na_ratio: float = 0.0,
    blank_ratio: float = 0.0,
) -> tuple[list[list[str]], float, int]:
    """Build the export grid.

    Returns:
        (grid, expected_total_sales, expected_item_rows). Expected values cover
        item rows only, i.e. what the analyzer should report after cleaning.
    """
    rng = np.random.default_rng(seed)
    grid: list[list[str]] = []
    for i in range(title_rows):
        grid.append([f"Sales Register - Outlet {i + 1}"] if i == 0 else ["Report generated", "2024-04-01"])
    grid.append(list(HEADER))

    dates = pd.date_range("2024-03-01", "2024-03-31", freq="D")
    expected_total = 0.0
    expected_rows = 0
    grand = 0.0
    for b in range(bills):
        bill_no = f"B{1000 + b}"
        date = dates[b % len(dates)].strftime("%Y-%m-%d")
        payment = PAYMENTS[int(rng.integers(0, len(PAYMENTS)))]
        bill_total = 0.0
        for _ in range(int(rng.integers(1, 5))):
            qty = int(rng.integers(1, 4))
            amount = round(float(rng.uniform(20, 500)) * qty, 2)
            bill_cell = "NA" if rng.random() < na_ratio else bill_no
            grid.append([date, bill_cell, ITEMS[int(rng.integers(0, len(ITEMS)))], str(qty), f"{amount:.2f}", payment])
            bill_total += amount
            if bill_cell != "NA":
                expected_total += amount
                expected_rows += 1
        if subtotals:
            grid.append(["", "", "Sub Total", "", f"{bill_total:.2f}", ""])
        if rng.random() < blank_ratio:
            grid.append([""] * len(HEADER))
        grand += bill_total
    if subtotals:
        grid.append(["", "Grand Total", "", "", f"{grand:.2f}", ""])
    return grid, round(expected_total, 2), expected_rows


def write_export(output_path: Path, grid: list[list[str]]) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(grid)
    suffix = output_path.suffix.lower()
    if suffix == ".csv":
        df.to_csv(output_path, header=False, index=False)
    elif suffix == ".xlsx":
        with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
            df.to_excel(writer, sheet_name="Sales", header=False, index=False)
    else:
        raise ValueError(f"unsupported output extension: {suffix}")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Generate messy sales exports (title rows, subtotals, NA bills)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s data/march.csv --bills 200
  %(prog)s data/large.xlsx --bills 20000 --na-ratio 0.02 --blank-ratio 0.05
        """,
    )
    parser.add_argument("output", type=Path, help="Output file (.csv or .xlsx)")
    parser.add_argument("--bills", type=int, default=1_000, help="Number of bills (default: 1,000)")
    parser.add_argument("--title-rows", type=int, default=2, help="Rows above the header (default: 2)")
    parser.add_argument("--no-subtotals", action="store_true", help="Omit Sub Total / Grand Total rows")
    parser.add_argument("--na-ratio", type=float, default=0.0, help="Share of item rows with NA bill id")
    parser.add_argument("--blank-ratio", type=float, default=0.0, help="Share of bills followed by a blank row")
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    args = parser.parse_args()

    if args.bills <= 0:
        print("Error: --bills must be positive", file=sys.stderr)
        return 1
    if args.title_rows < 0 or args.title_rows > 4:
        print("Error: --title-rows must be between 0 and 4 (header must stay in the preview)", file=sys.stderr)
        return 1

    grid, total, rows = generate_export_rows(
        args.bills,
        seed=args.seed,
        title_rows=args.title_rows,
        subtotals=not args.no_subtotals,
        na_ratio=args.na_ratio,
        blank_ratio=args.blank_ratio,
    )
    try:
        write_export(args.output, grid)
    except (OSError, ValueError) as e:
        print(f"Error writing export: {e}", file=sys.stderr)
        return 1

    print(f"Created sales export: {args.output}")
    print(f"  Grid rows: {len(grid):,}")
    print(f"  Expected total_sales={total:.2f} bill_rows={rows}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
