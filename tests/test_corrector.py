import pytest

from batchfix.config import FieldMapping
from batchfix.corrector import Corrector, build_selection_query, build_update_template, extract_table_name
from batchfix.schemas import DescriptorStatus
from batchfix.zip_county import (
    county_code_for_zip,
    county_name_for_zip,
    fips_code_for_zip,
    load_zip_county_map,
    normalize_zip,
)


FIELDS = FieldMapping(key="key_field", reference="zip_code", derived="county")


def test_mismatched_county_gets_update_statement(store) -> None:
    run = store.create_run()
    corrector = Corrector(store, FIELDS, lambda zip_code: "033", table="records")

    summary = corrector.generate([{"key_field": "k1", "zip_code": "99148", "county": "999"}], run)

    assert summary.mismatched == 1
    descriptor = store.read_descriptor(run, "k1")
    assert descriptor.status is DescriptorStatus.PENDING
    assert descriptor.query == "UPDATE records SET county = '033' WHERE key_field = 'k1'"


def test_correct_and_unmatched_rows_produce_no_statement(store) -> None:
    run = store.create_run()
    corrector = Corrector(store, FIELDS, fips_code_for_zip, table="records")
    rows = [
        {"key_field": "k1", "zip_code": "99148-0001", "county": " 065 "},
        {"key_field": "k2", "zip_code": "12345", "county": "001"},
        {"key_field": "k3", "zip_code": None, "county": "001"},
        {"key_field": "k4", "zip_code": "99148"},
    ]

    summary = corrector.generate(rows, run)

    assert summary.checked == 2
    assert summary.already_correct == 1
    assert summary.unmatched == ["k2"]
    assert [rejected.key for rejected in summary.rejected] == ["k4"]
    assert store.load_descriptors(run) == []


@pytest.mark.parametrize(
    ("query", "expected"),
    [
        ("SELECT key_field FROM sample_records WHERE condition = 't'", "sample_records"),
        ("select * from public.records limit 10", "public.records"),
        ("SELECT id FROM addresses;", "addresses"),
        ("SELECT 1", "table_name"),
    ],
)
def test_extract_table_name(query: str, expected: str) -> None:
    assert extract_table_name(query) == expected


def test_built_queries_use_configured_fields() -> None:
    assert build_selection_query("records", FIELDS) == (
        "SELECT key_field, zip_code, county FROM records WHERE zip_code IS NOT NULL"
    )
    assert build_update_template("records", FIELDS) == (
        "UPDATE records SET county = '{{expected}}' WHERE key_field = '{{key}}'"
    )


def test_zip_lookups() -> None:
    assert normalize_zip(" 99148-1234 ") == "99148"
    assert fips_code_for_zip("99148-1234") == "065"
    assert county_code_for_zip("99148") == "33"
    assert county_name_for_zip(99148) == "Stevens County"
    assert fips_code_for_zip("00000") is None
    assert county_code_for_zip(None) is None


def test_every_zip_maps_to_a_known_county() -> None:
    table = load_zip_county_map()

    assert len(table) > 200
    assert all(len(info.fips_code) == 3 for info in table.values())
