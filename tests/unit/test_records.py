"""Unit tests for source record decoding."""

import io
from datetime import date
from decimal import Decimal

import pytest

from sales_ingest.config import DEFAULT_COLUMNS
from sales_ingest.errors import DecodeError
from sales_ingest.records import RecordDecoder, line_revenue

HEADER = ",".join(DEFAULT_COLUMNS.values())
ROW = (
    'ORD-1,PRD-1,CUST-1,Trail Shoes,Footwear,North America,2024-01-15,2,180.00,0.10,12.50,'
    'Credit Card,Ada Lovelace,ada@example.com,"12 Analytical Way, London"'
)


def _decode(text: str, columns=None) -> list:
    return list(RecordDecoder(io.StringIO(text), columns))


def test_decodes_typed_record() -> None:
    [record] = _decode(f"{HEADER}\n{ROW}\n")

    assert record.line == 2
    assert record.order_id == "ORD-1"
    assert record.order_date == date(2024, 1, 15)
    assert record.quantity == 2
    assert record.unit_price == Decimal("180.00")
    assert record.discount == Decimal("0.10")
    assert record.shipping_cost == Decimal("12.50")
    assert record.customer_address == "12 Analytical Way, London"


def test_revenue_arithmetic() -> None:
    assert line_revenue(Decimal("180.00"), 2, Decimal("0.10")) == Decimal("324.00")

    [record] = _decode(f"{HEADER}\n{ROW}\n")
    assert record.revenue == Decimal("324.00")


def test_values_are_trimmed_and_blank_lines_skipped() -> None:
    padded = ROW.replace("ORD-1,", "  ORD-1 ,")

    records = _decode(f"{HEADER}\n\n{padded}\n   \n{ROW}\n")

    assert [r.order_id for r in records] == ["ORD-1", "ORD-1"]
    assert [r.line for r in records] == [3, 5]


def test_header_order_does_not_matter() -> None:
    headers = list(DEFAULT_COLUMNS.values())
    cells = [
        "ORD-9", "PRD-9", "CUST-9", "Mug", "Kitchen", "Europe", "2024-03-01", "1",
        "9.99", "0", "0", "Cash", "Bob", "bob@example.com", "Main St",
    ]
    text = ",".join(reversed(headers)) + "\n" + ",".join(reversed(cells)) + "\n"

    [record] = _decode(text)

    assert record.order_id == "ORD-9"
    assert record.discount == Decimal("0.00")


def test_byte_order_mark_in_header_is_ignored() -> None:
    [record] = _decode("\ufeff" + f"{HEADER}\n{ROW}\n")
    assert record.order_id == "ORD-1"


def test_timestamp_dates_keep_date_part() -> None:
    row = ROW.replace("2024-01-15", "2024-01-15T23:10:00Z")
    [record] = _decode(f"{HEADER}\n{row}\n")
    assert record.order_date == date(2024, 1, 15)


def test_money_is_quantized_to_cents() -> None:
    row = ROW.replace("180.00", "180.005")
    [record] = _decode(f"{HEADER}\n{row}\n")
    assert record.unit_price == Decimal("180.01")


def test_missing_order_id_is_a_decode_error() -> None:
    row = ROW.replace("ORD-1,", ",", 1)

    with pytest.raises(DecodeError) as exc_info:
        _decode(f"{HEADER}\n{row}\n")

    assert exc_info.value.field == "order_id"
    assert exc_info.value.line == 2


def test_missing_header_column() -> None:
    header = HEADER.replace("Order ID,", "")

    with pytest.raises(DecodeError, match="Order ID"):
        RecordDecoder(io.StringIO(f"{header}\n"))


def test_empty_source() -> None:
    with pytest.raises(DecodeError, match="empty"):
        RecordDecoder(io.StringIO(""))


@pytest.mark.parametrize(
    "old, new, field",
    [
        (",2,180.00", ",two,180.00", "quantity"),
        (",2,180.00", ",0,180.00", "quantity"),
        (",180.00,", ",abc,", "unit_price"),
        (",180.00,", ",-1.00,", "unit_price"),
        (",0.10,", ",1.50,", "discount"),
        (",12.50,", ",NaN,", "shipping_cost"),
        ("2024-01-15", "15/01/2024", "order_date"),
    ],
)
def test_invalid_values(old, new, field) -> None:
    row = ROW.replace(old, new, 1)

    with pytest.raises(DecodeError) as exc_info:
        _decode(f"{HEADER}\n{row}\n")

    assert exc_info.value.field == field


@pytest.mark.parametrize("quantity", ["3000000000", "2147483648", "1_000", "+5", "2.0", "\u0663"])
def test_quantity_must_be_plain_integer_in_range(quantity) -> None:
    row = ROW.replace(",2,180.00", f",{quantity},180.00", 1)

    with pytest.raises(DecodeError) as exc_info:
        _decode(f"{HEADER}\n{row}\n")

    assert exc_info.value.field == "quantity"
    assert exc_info.value.line == 2


def test_largest_quantity_is_accepted() -> None:
    row = ROW.replace(",2,180.00", ",2147483647,180.00", 1)

    [record] = _decode(f"{HEADER}\n{row}\n")

    assert record.quantity == 2**31 - 1


def test_wrong_cell_count() -> None:
    with pytest.raises(DecodeError, match="cells"):
        _decode(f"{HEADER}\n{ROW},extra\n")


def test_unquoted_address_with_delimiter_is_rejected() -> None:
    row = ROW.replace('"12 Analytical Way, London"', "12 Analytical Way, London")

    with pytest.raises(DecodeError):
        _decode(f"{HEADER}\n{row}\n")


def test_custom_column_mapping() -> None:
    columns = dict(DEFAULT_COLUMNS, order_id="Order Number")
    header = HEADER.replace("Order ID", "Order Number")

    [record] = _decode(f"{header}\n{ROW}\n", columns)

    assert record.order_id == "ORD-1"


def test_decoding_is_lazy() -> None:
    bad = ROW.replace("ORD-1,", ",", 1)
    records = iter(RecordDecoder(io.StringIO(f"{HEADER}\n{ROW}\n{bad}\n")))

    assert next(records).order_id == "ORD-1"
    with pytest.raises(DecodeError):
        next(records)
