# WORKFLOW: Tests for organization name normalization and the reference table.
# Test scenarios:
# 1. Case-folding, diacritic and punctuation removal
# 2. CSV loading of organizations and the identifier crosswalk
# 3. Read-only indexes and pickling for worker processes
# 4. Unreadable or incomplete reference files raise ReferenceTableError

import pickle

import pytest

from core.exceptions import ReferenceTableError
from schemas.organizations import OrganizationReferenceEntry
from services.reference_table import (
    build_reference_table,
    load_reference_table,
    name_tokens,
    normalize_external_identifier,
    normalize_organization_name,
    read_organizations,
)


@pytest.mark.parametrize("raw, expected", [
    ("  Université de Genève (UNIGE) ", "universite de geneve unige"),
    ("UNIVERSITE DE GENEVE", "universite de geneve"),
    ("Københavns Universitet", "kobenhavns universitet"),
    ("Technische Universität München", "technische universitat munchen"),
    ("Max-Planck-Institut für Physik", "max planck institut fur physik"),
    ("CERN\u200b", "cern"),
    ("", ""),
    (None, ""),
])
def test_normalize_organization_name(raw, expected):
    assert normalize_organization_name(raw) == expected


def test_name_tokens_skip_generic_words():
    assert name_tokens("universite de geneve") == frozenset({"geneve"})
    assert name_tokens("the university") == frozenset({"the", "university"})


def test_normalize_external_identifier():
    assert normalize_external_identifier("ror", "https://ror.org/01ggx4157/") == ("ROR", "01ggx4157")
    assert normalize_external_identifier(" Ringgold ", "12345") == ("RINGGOLD", "12345")
    assert normalize_external_identifier("FUNDREF", "http://dx.doi.org/10.13039/501100006390") == (
        "FUNDREF", "501100006390"
    )


class TestLoadedTable:
    def setup_method(self):
        from pathlib import Path
        data = Path(__file__).parent / "data"
        self.table = load_reference_table(data / "orgs.csv", data / "org_mappings.csv")

    def test_entries(self):
        assert len(self.table) == 4
        assert "01ggx4157" in self.table
        cern = self.table.get("01ggx4157")
        assert cern.primary_name == "European Organization for Nuclear Research"
        assert "CERN" in cern.alias_names
        assert cern.country == "CH"
        assert self.table.get("05gq02987").alias_names == frozenset()

    def test_quoted_names_keep_commas(self):
        athena = self.table.get("00tdwhm40")
        assert athena.primary_name == "Athena Research and Innovation Center, Athens"

    def test_exact_index_covers_aliases(self):
        assert self.table.exact_matches("cern") == frozenset({"01ggx4157"})
        assert self.table.exact_matches("university of geneva") == frozenset({"01swzsf04"})
        assert self.table.exact_matches("unknown") == frozenset()

    def test_crosswalk(self):
        assert self.table.external_id_count == 2
        assert self.table.lookup_external("ringgold", "12345") == "00tdwhm40"
        assert self.table.lookup_external("FUNDREF", "501100006390") == "01swzsf04"
        assert self.table.lookup_external("GRID", "grid.9132.9") is None

    def test_indexes_are_read_only(self):
        with pytest.raises(TypeError):
            self.table.entries["new"] = None

    def test_pickle_round_trip(self):
        restored = pickle.loads(pickle.dumps(self.table))
        assert len(restored) == len(self.table)
        assert restored.exact_matches("cern") == frozenset({"01ggx4157"})
        assert restored.lookup_external("RINGGOLD", "12345") == "00tdwhm40"
        assert restored.normalized_names("01swzsf04") == self.table.normalized_names("01swzsf04")


def test_duplicate_entries_are_merged():
    table = build_reference_table([
        OrganizationReferenceEntry(canonical_id="x1", primary_name="Acme Labs"),
        OrganizationReferenceEntry(canonical_id="x1", primary_name="Acme Laboratories", country="US"),
    ])
    assert len(table) == 1
    assert table.exact_matches("acme laboratories") == frozenset({"x1"})
    assert table.get("x1").country == "US"


def test_empty_table():
    table = load_reference_table()
    assert len(table) == 0
    assert table.external_id_count == 0


def test_missing_columns(tmp_path):
    orgs = tmp_path / "orgs.csv"
    orgs.write_text("identifier,label\nx1,Acme\n")
    with pytest.raises(ReferenceTableError, match="missing columns"):
        read_organizations(orgs)


def test_unreadable_file(tmp_path):
    with pytest.raises(ReferenceTableError):
        load_reference_table(tmp_path / "missing.csv")
    with pytest.raises(ReferenceTableError):
        load_reference_table(mappings_file=tmp_path / "missing.csv")
