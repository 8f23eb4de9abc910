"""
Heuristic clean-up of LaTeX produced through the note-export conversion path.

pandoc renders Markdown tables as ``longtable`` with flowing ``p{}`` columns and
minipage headers, which the book layouts do not style well. These transforms turn
each such table into a fixed bordered ``tabular``, re-inserting the header row
taken from the original Markdown, and restore paragraph breaks around commands
that the export tends to run together.

Every function here is a pure ``str -> str`` transform.
"""

from __future__ import annotations

import re
from typing import List, Optional

TABLE_ROW_PATTERN = re.compile(r"^\|(.+?)\|$")
LONGTABLE_PATTERN = re.compile(r"\\begin\{longtable\}\[\]\{([^}]*)\}(.*?)\\end\{longtable\}", re.DOTALL)

SKIPPED_TABLE_COMMANDS = (
    "\\endfirsthead",
    "\\endhead",
    "\\endfoot",
    "\\endlastfoot",
    "\\toprule",
    "\\midrule",
    "\\bottomrule",
)

DEFAULT_COLUMN_COUNT = 2


def extract_table_header(markdown: str) -> Optional[List[str]]:
    """Cells of the first pipe-delimited Markdown row with at least two non-empty cells."""
    for line in markdown.splitlines():
        match = TABLE_ROW_PATTERN.match(line.strip())
        if not match:
            continue
        cells = [cell.strip() for cell in match.group(1).split("|")]
        cells = [cell for cell in cells if cell]
        if len(cells) >= 2:
            return cells
    return None


def clean_latex_artifacts(latex: str) -> str:
    latex = re.sub(r"\\end\{minipage\}\s*\\hline", r"\\hline", latex)
    latex = re.sub(r"\n\s*\n\s*\n", "\n\n", latex)
    latex = re.sub(r"[ \t]+\n", "\n", latex)
    return latex


def count_columns(column_spec: str) -> int:
    spec = re.sub(r"@\{[^}]*\}", "", column_spec)
    spec = re.sub(r"p\{[^}]*\}", "p", spec)
    spec = re.sub(r">\{[^}]*\}", "", spec)
    spec = re.sub(r"\\real\{[^}]*\}", "", spec)
    count = len(re.sub(r"[^lcrp]", "", spec))
    return count or DEFAULT_COLUMN_COUNT


def _clean_row(line: str) -> str:
    row = line.replace("\\end{minipage}", "")
    row = row.replace("\\begin{minipage}[b]{\\linewidth}\\raggedright", "")
    row = re.sub(r"\s+", " ", row)
    row = re.sub(r"\s*&\s*", " & ", row)
    return row.rstrip("\\ ").strip()


def _is_skipped(line: str) -> bool:
    if line in SKIPPED_TABLE_COMMANDS:
        return True
    if line.startswith("\\caption") or "Continued on next page" in line:
        return True
    return line.startswith("\\multicolumn") and "\\\\" not in line


def build_bordered_table(column_spec: str, body: str, header: Optional[List[str]] = None) -> str:
    columns = count_columns(column_spec)
    rows: List[str] = []
    if header and len(header) >= columns:
        rows.append(" & ".join(header[:columns]) + " \\\\")
        rows.append("\\hline")

    for raw_line in body.splitlines():
        line = raw_line.strip()
        if not line or _is_skipped(line) or "&" not in line:
            continue
        row = _clean_row(line)
        if header and rows and _same_cells(row, header[:columns]):
            continue
        rows.append(f"{row} \\\\")
        rows.append("\\hline")

    content = "\n".join(rows)
    spec = "|" + "c|" * columns
    return f"\\begin{{tabular}}{{{spec}}}\n\\hline\n{content}\n\\end{{tabular}}"


def _same_cells(row: str, header: List[str]) -> bool:
    return [cell.strip() for cell in row.split("&")] == [cell.strip() for cell in header]


def convert_longtables(latex: str, header: Optional[List[str]] = None) -> str:
    latex = clean_latex_artifacts(latex)
    return LONGTABLE_PATTERN.sub(lambda match: build_bordered_table(match.group(1), match.group(2), header), latex)


def fix_missing_line_breaks(latex: str) -> str:
    for command in ("\\section{", "\\subsection{", "\\subsubsection{", "\\includegraphics{"):
        latex = latex.replace(command, f"\n\n{command}")
    for command in ("\\end{tabular}", "\\end{itemize}", "\\end{longtable}"):
        latex = latex.replace(command, f"{command}\n\n")
    return re.sub(r"\n{3,}", "\n\n", latex)


def add_spacing_around_tables(latex: str) -> str:
    for environment in ("tabular", "longtable"):
        latex = re.sub(rf"([^\s])\\begin\{{{environment}\}}", rf"\1\n\n\\begin{{{environment}}}", latex)
        latex = re.sub(rf"\\end\{{{environment}\}}([^\s])", rf"\\end{{{environment}}}\n\n\1", latex)
    return latex


def postprocess_latex(latex: str, markdown: str) -> str:
    """Run every transform in order; ``markdown`` is the source the LaTeX was converted from."""
    header = extract_table_header(markdown)
    latex = convert_longtables(latex, header)
    latex = fix_missing_line_breaks(latex)
    latex = add_spacing_around_tables(latex)
    return latex
