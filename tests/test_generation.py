import pytest

from batchfix.errors import MalformedKeyError, TemplateError
from batchfix.generation import QueryGenerator, extract_key, placeholders, render_statement
from batchfix.schemas import DescriptorStatus, LedgerAction


def test_render_statement_substitutes_every_placeholder() -> None:
    key, statement = render_statement(
        "UPDATE t SET f='{{v}}' WHERE k='{{key}}'",
        {"key": "k1", "v": "x"},
        key_field="key",
    )

    assert key == "k1"
    assert statement == "UPDATE t SET f='x' WHERE k='k1'"


def test_render_statement_resolves_positional_and_case_insensitive_columns() -> None:
    row = {"ID": "42", "Name": "Ada", "city": "Spokane"}

    _, statement = render_statement(
        "UPDATE t SET a='{{field1}}', b='{{field2}}', c='{{NAME}}' WHERE id='{{ key }}'",
        row,
        key_field="ID",
    )

    assert statement == "UPDATE t SET a='Ada', b='Spokane', c='Ada' WHERE id='42'"


def test_render_statement_doubles_quotes_and_blanks_nulls() -> None:
    _, statement = render_statement(
        "UPDATE t SET n='{{name}}', m='{{middle}}' WHERE k='{{key}}'",
        {"k": "k1", "name": "O'Brien", "middle": None},
        key_field="k",
    )

    assert statement == "UPDATE t SET n='O''Brien', m='' WHERE k='k1'"


def test_render_statement_unknown_placeholder_is_template_error() -> None:
    with pytest.raises(TemplateError, match="missing_column"):
        render_statement("UPDATE t SET f='{{missing_column}}' WHERE k='{{key}}'", {"k": "k1"}, key_field="k")


@pytest.mark.parametrize("row", [{"k": None}, {"k": ""}, {"k": "   "}, {"other": "x"}])
def test_extract_key_rejects_missing_or_blank_keys(row: dict[str, object]) -> None:
    with pytest.raises(MalformedKeyError):
        extract_key(row, "k")


def test_placeholders_lists_names_in_order() -> None:
    assert placeholders("{{a}} {{ b }} {{key}}") == ["a", "b", "key"]


def test_generator_skips_keys_in_processed_ledger(store, ledger) -> None:
    ledger.record("k1", LedgerAction.UPDATED)
    run = store.create_run()
    rows = [{"k": "k1", "v": "a"}, {"k": "k2", "v": "b"}]

    summary = QueryGenerator(store, ledger, key_field="k").generate(
        rows, "UPDATE t SET f='{{v}}' WHERE k='{{key}}'", run
    )

    assert summary.selected == 2
    assert summary.generated == 1
    assert summary.skipped == 1
    assert not store.has_descriptor(run, "k1")

    descriptor = store.read_descriptor(run, "k2")
    assert descriptor.status is DescriptorStatus.PENDING
    assert descriptor.query == "UPDATE t SET f='b' WHERE k='k2'"
    assert descriptor.result is None


def test_generator_rejects_bad_rows_and_keeps_going(store, ledger) -> None:
    run = store.create_run()
    rows = [
        {"k": "", "v": "a"},
        {"k": "k2"},
        {"k": "k3", "v": "c"},
        {"k": "k3", "v": "duplicate"},
    ]

    summary = QueryGenerator(store, ledger, key_field="k").generate(
        rows, "UPDATE t SET f='{{v}}' WHERE k='{{key}}'", run
    )

    assert summary.generated == 1
    assert summary.skipped == 1
    assert [(rejected.row_index, rejected.key) for rejected in summary.rejected] == [(0, None), (1, "k2")]
    assert store.read_descriptor(run, "k3").query == "UPDATE t SET f='c' WHERE k='k3'"
    assert [descriptor.key for descriptor in store.load_descriptors(run)] == ["k3"]
