"""Tests for jurisdiction detection and CSV splitting."""
from __future__ import annotations

import csv
import io

import pytest

from conftest import CHICAGO_DALLAS_CSV, SINGLE_CITY_CSV
from ingestion.location_splitter import (
    detect_locations,
    is_valid_city,
    is_valid_state,
    read_csv_records,
    resolve_location,
    split_csv_by_location,
)


class TestCityValidation:

    @pytest.mark.parametrize(
        "city",
        ["Chicago", "St. Louis", "Winston-Salem", "Coeur d'Alene", "New York", "Española", "Cañon City"],
    )
    def test_accepts_real_cities(self, city):
        assert is_valid_city(city) is True

    @pytest.mark.parametrize(
        "value",
        [
            "",
            None,
            "X",
            "Illegal dumping on lot",
            "Overgrown weeds",
            "Debris in backyard",
            "Please notify owner",
            "City",
            "violation type",
            "123 Main St",
            "01/02/2024",
            "Chicago 60601",
            "Lot cleared. Owner notified",
            "Chicago (north)",
            "A" * 51,
        ],
    )
    def test_rejects_non_cities(self, value):
        assert is_valid_city(value) is False

    def test_state_codes(self):
        assert is_valid_state("IL")
        assert is_valid_state("tx")
        assert is_valid_state("DC")
        assert not is_valid_state("ZZ")
        assert not is_valid_state("Illinois")
        assert not is_valid_state(None)

    def test_resolve_location_uses_fallbacks_independently(self):
        assert resolve_location("Chicago", "il") == ("Chicago", "IL")
        assert resolve_location("Weeds and debris", "IL", fallback_city="Peoria") == ("Peoria", "IL")
        assert resolve_location("Chicago", "", fallback_state="IL") == ("Chicago", "IL")
        assert resolve_location("Weeds", "IL") is None
        assert resolve_location("Chicago", "ZZ", fallback_state="Nope") is None


class TestCsvRecords:

    def test_quoted_newlines_stay_in_one_record(self):
        text = 'a,b\n1,"line one\nline two"\n2,plain\n'
        records = list(read_csv_records(text))
        assert [r.fields for r in records] == [["a", "b"], ["1", "line one\nline two"], ["2", "plain"]]
        assert records[1].raw == '1,"line one\nline two"'

    def test_blank_lines_and_bom_are_ignored(self):
        records = list(read_csv_records("\ufeffa,b\n\n1,2\n,\n"))
        assert [r.fields for r in records] == [["a", "b"], ["1", "2"]]


class TestDetectLocations:

    def test_detects_cities_with_counts(self):
        detection = detect_locations(CHICAGO_DALLAS_CSV)

        assert [(loc.city, loc.state, loc.count) for loc in detection.locations] == [
            ("Chicago", "IL", 3),
            ("Dallas", "TX", 2),
        ]
        assert detection.missing_location_rows == 1
        assert detection.total_rows == 6
        assert detection.is_multi_location
        assert detection.unique_states == ["IL", "TX"]

    def test_description_in_city_column_never_becomes_a_location(self):
        detection = detect_locations(CHICAGO_DALLAS_CSV)
        assert "Illegal dumping on lot" not in detection.unique_cities

    def test_fallback_city_recovers_missing_rows(self):
        detection = detect_locations(CHICAGO_DALLAS_CSV, fallback_city="Chicago")
        counts = {loc.city: loc.count for loc in detection.locations}
        assert counts["Chicago"] == 4
        assert detection.missing_location_rows == 0

    def test_single_location(self):
        detection = detect_locations(SINGLE_CITY_CSV)
        assert not detection.is_multi_location
        assert detection.as_dict()["locations"] == [{"city": "Austin", "state": "TX", "count": 3}]

    def test_accented_city_names_are_located(self):
        text = "Address,City,State,Violation\n" \
               "1 Main St,Española,NM,Weeds\n" \
               "2 Main St,Cañon City,CO,Trash\n"

        detection = detect_locations(text)

        assert detection.missing_location_rows == 0
        assert len(detection.locations) == 2

    def test_empty_document(self):
        detection = detect_locations("")
        assert detection.total_rows == 0
        assert detection.locations == []

    def test_header_aliases(self):
        text = "Property Address,Municipality,St,Description\n1 A St,Tulsa,OK,Weeds\n"
        detection = detect_locations(text)
        assert [(loc.city, loc.state) for loc in detection.locations] == [("Tulsa", "OK")]


class TestSplitCsv:

    def test_split_preserves_header_and_rows_verbatim(self):
        documents = split_csv_by_location(CHICAGO_DALLAS_CSV)

        assert list(documents) == ["Chicago|IL", "Dallas|TX"]
        header = CHICAGO_DALLAS_CSV.splitlines()[0]
        chicago = documents["Chicago|IL"].splitlines()
        assert chicago[0] == header
        assert chicago[1:] == [
            "C-1,100 Main St,Chicago,IL,60601,Weeds and grass,Open,2024-01-05",
            "C-2,200 Oak Ave,Chicago,IL,60602,Roof leak,Open,2024-02-10",
            "C-4,500 Lake Dr,chicago,IL,60604,Vacant and boarded,Open,2024-04-01",
        ]

    def test_rows_without_location_appear_in_no_group(self):
        documents = split_csv_by_location(CHICAGO_DALLAS_CSV)
        assert all("Illegal dumping" not in doc for doc in documents.values())

    def test_split_rows_reparse_to_original_fields(self):
        text = (
            "Case,Address,City,State,Violation\n"
            '1,"10 A St, Unit 2",Boise,ID,"Said ""no""\nthen left"\n'
            "2,20 B St,Reno,NV,Trash\n"
        )
        documents = split_csv_by_location(text)
        rows = list(csv.reader(io.StringIO(documents["Boise|ID"])))
        assert rows[1] == ["1", "10 A St, Unit 2", "Boise", "ID", 'Said "no"\nthen left']

    def test_every_located_row_lands_in_exactly_one_group(self):
        documents = split_csv_by_location(CHICAGO_DALLAS_CSV)
        detection = detect_locations(CHICAGO_DALLAS_CSV)
        data_rows = sum(len(doc.splitlines()) - 1 for doc in documents.values())
        assert data_rows == detection.total_rows - detection.missing_location_rows

    def test_no_header_yields_nothing(self):
        assert split_csv_by_location("") == {}
