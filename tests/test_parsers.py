"""
Tests for the streaming CSV/XLSX readers.
"""

import pytest

from leadflow.domain.imports.errors import FileParseError
from leadflow.domain.imports.parsers import (
    count_data_rows,
    detect_file_type,
    iter_chunks,
    iter_rows,
    read_headers,
    read_preview,
)
from tests.utils.files import contact_rows, make_csv, make_xlsx


@pytest.fixture
def write_file(tmp_path):
    def _write(name, content):
        path = tmp_path / name
        path.write_bytes(content)
        return str(path)

    return _write


def test_detect_file_type():
    assert detect_file_type("leads.CSV") == "csv"
    assert detect_file_type("export.xlsx") == "xlsx"
    assert detect_file_type("legacy.xls") is None
    assert detect_file_type("") is None


class TestCsv:
    def test_semicolon_delimited(self, write_file):
        path = write_file("leads.csv", make_csv(contact_rows(3), delimiter=";"))

        assert read_headers(path, "csv") == ["Email", "Prenom", "Nom", "Telephone"]
        rows = list(iter_rows(path, "csv"))
        assert [number for number, _ in rows] == [1, 2, 3]
        assert rows[0][1] == {
            "Email": "contact1@example.com",
            "Prenom": "prenom1",
            "Nom": "nom1",
            "Telephone": "0600000001",
        }

    def test_windows_1252_file(self, write_file):
        content = "Email;Prénom;Ville\njean@example.com;Hélène;Orléans\n".encode("cp1252")
        path = write_file("legacy.csv", content)

        assert read_headers(path, "csv") == ["Email", "Prénom", "Ville"]
        (_, row), = list(iter_rows(path, "csv"))
        assert row["Prénom"] == "Hélène"
        assert row["Ville"] == "Orléans"

    def test_windows_1252_byte_far_into_the_file(self, write_file):
        lines = ["Email,Nom"] + [f"contact{i}@example.com,Nom{i}" for i in range(4000)]
        lines.append("zoe@example.com,Zoé")
        content = ("\n".join(lines) + "\n").encode("cp1252")
        assert content.index(b"\xe9") > 64 * 1024
        path = write_file("late.csv", content)

        rows = list(iter_rows(path, "csv", chunk_size=500))

        assert len(rows) == 4001
        assert rows[-1] == (4001, {"Email": "zoe@example.com", "Nom": "Zoé"})
        assert count_data_rows(path, "csv") == 4001

    def test_undecodable_as_cp1252_falls_back_to_latin1(self, write_file):
        path = write_file("odd.csv", b"Email,Nom\na@example.com,X\x81Y\n")
        (_, row), = list(iter_rows(path, "csv"))
        assert row["Nom"] == "X\x81Y"

    def test_blank_and_repeated_headers(self, write_file):
        path = write_file("headers.csv", b"Email,,Email\na,b,c\n")

        assert read_headers(path, "csv") == ["Email", "column_2", "Email.1"]
        (_, row), = list(iter_rows(path, "csv"))
        assert row == {"Email": "a", "column_2": "b", "Email.1": "c"}

    def test_utf8_bom_is_stripped(self, write_file):
        content = b"\xef\xbb\xbfEmail,Nom\na@example.com,Durand\n"
        path = write_file("bom.csv", content)
        assert read_headers(path, "csv") == ["Email", "Nom"]

    def test_blank_rows_are_not_numbered(self, write_file):
        content = b"Email,Nom\na@example.com,A\n\n,\nb@example.com,B\n"
        path = write_file("gaps.csv", content)

        rows = list(iter_rows(path, "csv"))
        assert [(number, row["Email"]) for number, row in rows] == [
            (1, "a@example.com"),
            (2, "b@example.com"),
        ]
        assert count_data_rows(path, "csv") == 2

    def test_empty_cells_become_none(self, write_file):
        path = write_file("sparse.csv", b"Email,Nom,Ville\na@example.com,,\n")
        (_, row), = list(iter_rows(path, "csv"))
        assert row == {"Email": "a@example.com", "Nom": None, "Ville": None}

    def test_values_are_kept_as_text(self, write_file):
        path = write_file("zip.csv", b"Email,CP\na@example.com,01000\n")
        (_, row), = list(iter_rows(path, "csv"))
        assert row["CP"] == "01000"


class TestXlsx:
    def test_reads_first_sheet(self, write_file):
        path = write_file("leads.xlsx", make_xlsx(contact_rows(2)))

        assert read_headers(path, "xlsx") == ["Email", "Prenom", "Nom", "Telephone"]
        rows = list(iter_rows(path, "xlsx"))
        assert len(rows) == 2
        assert rows[1][1]["Email"] == "contact2@example.com"

    def test_numeric_cells_become_text(self, write_file):
        path = write_file(
            "numbers.xlsx",
            make_xlsx([("a@example.com", 612345678, 75001.0)], headers=("Email", "Tel", "CP")),
        )
        (_, row), = list(iter_rows(path, "xlsx"))
        assert row == {"Email": "a@example.com", "Tel": "612345678", "CP": "75001"}

    def test_blank_and_repeated_headers(self, write_file):
        path = write_file(
            "headers.xlsx",
            make_xlsx([("a", "b", "c")], headers=("Email", None, "Email")),
        )
        assert read_headers(path, "xlsx") == ["Email", "column_2", "Email.1"]

    def test_blank_rows_skipped(self, write_file):
        path = write_file(
            "gaps.xlsx",
            make_xlsx([("a@example.com", "A"), (None, None), ("b@example.com", "B")], headers=("Email", "Nom")),
        )
        assert [number for number, _ in iter_rows(path, "xlsx")] == [1, 2]


class TestChunks:
    @pytest.mark.parametrize("file_type,builder", [("csv", make_csv), ("xlsx", make_xlsx)])
    def test_fixed_size_chunks(self, write_file, file_type, builder):
        path = write_file(f"leads.{file_type}", builder(contact_rows(12)))

        chunks = list(iter_chunks(path, file_type, chunk_size=5))

        assert [number for number, _ in chunks] == [1, 2, 3]
        assert [len(rows) for _, rows in chunks] == [5, 5, 2]
        assert chunks[2][1][0][0] == 11

    def test_rereading_yields_same_numbering(self, write_file):
        path = write_file("leads.csv", make_csv(contact_rows(7)))
        first = list(iter_chunks(path, "csv", chunk_size=3))
        second = list(iter_chunks(path, "csv", chunk_size=3))
        assert first == second


class TestErrors:
    def test_corrupt_xlsx(self, write_file):
        path = write_file("broken.xlsx", b"this is not a zip archive")
        with pytest.raises(FileParseError):
            read_headers(path, "xlsx")

    def test_unsupported_type(self, write_file):
        path = write_file("leads.json", b"[]")
        with pytest.raises(FileParseError, match="Unsupported file type"):
            list(iter_rows(path, "json"))


def test_preview_limits_samples(write_file):
    path = write_file("leads.csv", make_csv(contact_rows(20)))
    headers, samples = read_preview(path, "csv", sample_size=5)

    assert headers == ["Email", "Prenom", "Nom", "Telephone"]
    assert len(samples) == 5
    assert samples[-1]["Email"] == "contact5@example.com"
