"""
Tests for the LaTeX clean-up applied after the note-export conversion.
"""

import pytest

from book_press_backend.postprocess import (
    add_spacing_around_tables,
    build_bordered_table,
    clean_latex_artifacts,
    convert_longtables,
    count_columns,
    extract_table_header,
    fix_missing_line_breaks,
    postprocess_latex,
)

PANDOC_TABLE = (
    "\\begin{longtable}[]{@{}ll@{}}\n"
    "\\toprule\n"
    "\\begin{minipage}[b]{\\linewidth}\\raggedright Nom\\end{minipage} & "
    "\\begin{minipage}[b]{\\linewidth}\\raggedright Age\\end{minipage} \\\\\n"
    "\\midrule\n"
    "\\endhead\n"
    "Alice & 30 \\\\\n"
    "Bob & 25 \\\\\n"
    "\\bottomrule\n"
    "\\end{longtable}"
)

BORDERED_TABLE = (
    "\\begin{tabular}{|c|c|}\n"
    "\\hline\n"
    "Nom & Age \\\\\n"
    "\\hline\n"
    "Alice & 30 \\\\\n"
    "\\hline\n"
    "Bob & 25 \\\\\n"
    "\\hline\n"
    "\\end{tabular}"
)


class TestTableHeader:
    def test_first_pipe_row(self):
        markdown = "Intro\n\n| Nom | Age |\n|-----|-----|\n| Alice | 30 |\n"
        assert extract_table_header(markdown) == ["Nom", "Age"]

    def test_single_cell_rows_are_skipped(self):
        assert extract_table_header("| seul |\n| A | B | C |") == ["A", "B", "C"]

    def test_no_table(self):
        assert extract_table_header("Pas de tableau.") is None


class TestCountColumns:
    @pytest.mark.parametrize(
        "spec, expected",
        [
            ("@{}ll@{}", 2),
            ("@{}lcr@{}", 3),
            ("p{3cm}p{4cm}", 2),
            ("|l|l|l|l|", 4),
            ("", 2),
        ],
    )
    def test_count(self, spec, expected):
        assert count_columns(spec) == expected


class TestBorderedTable:
    def test_header_reinserted_and_rows_separated(self):
        assert convert_longtables(PANDOC_TABLE, ["Nom", "Age"]) == BORDERED_TABLE

    def test_without_header_keeps_minipage_row_as_data(self):
        table = convert_longtables(PANDOC_TABLE)
        assert table.startswith("\\begin{tabular}{|c|c|}\n\\hline\nNom & Age \\\\\n\\hline\nAlice")

    def test_header_truncated_to_column_count(self):
        table = build_bordered_table("ll", "a & b \\\\", ["X", "Y", "Z"])
        assert "X & Y \\\\" in table
        assert "Z" not in table

    def test_short_header_is_not_used(self):
        table = build_bordered_table("lll", "a & b & c \\\\", ["X", "Y"])
        assert "X & Y" not in table

    def test_captions_and_continuation_rows_are_dropped(self):
        body = "\\caption{Tableau} \\\\\n\\multicolumn{2}{r}{Continued on next page} \\\\\n\\endfoot\na & b \\\\"
        table = build_bordered_table("ll", body)
        assert "caption" not in table
        assert "Continued" not in table
        assert "a & b \\\\" in table

    def test_clean_artifacts(self):
        assert clean_latex_artifacts("x\\end{minipage} \\hline") == "x\\hline"
        assert clean_latex_artifacts("a  \n\n\n\nb") == "a\n\nb"


class TestLineBreaks:
    def test_breaks_before_headings_and_images(self):
        fixed = fix_missing_line_breaks("Texte\\section{A}Suite\\includegraphics{images/a.png}")
        assert fixed == "Texte\n\n\\section{A}Suite\n\n\\includegraphics{images/a.png}"

    def test_breaks_after_closing_environments(self):
        assert fix_missing_line_breaks("\\end{itemize}Suite") == "\\end{itemize}\n\nSuite"

    def test_no_runs_of_blank_lines(self):
        assert fix_missing_line_breaks("A\n\n\n\\section{B}") == "A\n\n\\section{B}"

    def test_spacing_around_tables(self):
        spaced = add_spacing_around_tables("x\\begin{tabular}{c}y\\end{tabular}z")
        assert spaced == "x\n\n\\begin{tabular}{c}y\\end{tabular}\n\nz"


class TestPostprocessLatex:
    def test_full_pipeline(self):
        latex = "\\section{Tableau}Intro\n" + PANDOC_TABLE + "Fin"
        markdown = "# Tableau\n\n| Nom | Age |\n|---|---|\n| Alice | 30 |\n"

        result = postprocess_latex(latex, markdown)

        assert "longtable" not in result
        assert BORDERED_TABLE in result
        assert result.startswith("\n\n\\section{Tableau}")
        assert result.endswith("\\end{tabular}\n\nFin")
