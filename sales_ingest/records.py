"""
Source record decoding.

Turns the flat sales CSV into typed SaleRecord rows, one at a time, so the
batcher never holds more than a window in memory. Every field is required;
anything that cannot be decoded raises DecodeError with the source line.
"""

import csv
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterator, TextIO

from sales_ingest.config import DEFAULT_COLUMNS
from sales_ingest.errors import DecodeError

CENTS = Decimal("0.01")
MAX_MONEY = Decimal("99999999.99")  # DECIMAL(10, 2)
MAX_QUANTITY = 2**31 - 1            # INTEGER


@dataclass(frozen=True)
class SaleRecord:
    """One sold line item, as it appears in the source file."""
    line: int               # 1-based line in the source (end of the record)
    order_id: str
    product_id: str
    customer_id: str
    product_name: str
    category: str
    region: str
    order_date: date
    quantity: int
    unit_price: Decimal     # 2 decimal places
    discount: Decimal       # fraction in [0, 1], 2 decimal places
    shipping_cost: Decimal  # 2 decimal places
    payment_method: str
    customer_name: str
    customer_email: str
    customer_address: str

    @property
    def revenue(self) -> Decimal:
        return line_revenue(self.unit_price, self.quantity, self.discount)


def line_revenue(unit_price: Decimal, quantity: int, discount: Decimal) -> Decimal:
    """Revenue of a line item: unit_price * quantity * (1 - discount), in cents."""
    return (unit_price * quantity * (1 - discount)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _parse_money(value: str, field_name: str, line: int) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation as e:
        raise DecodeError(f"Invalid amount '{value}'", line, field_name) from e
    if not amount.is_finite() or amount < 0 or amount > MAX_MONEY:
        raise DecodeError(f"Amount out of range '{value}'", line, field_name)
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def _parse_discount(value: str, field_name: str, line: int) -> Decimal:
    try:
        discount = Decimal(value)
    except InvalidOperation as e:
        raise DecodeError(f"Invalid discount '{value}'", line, field_name) from e
    if not discount.is_finite() or discount < 0 or discount > 1:
        raise DecodeError(f"Discount must be between 0 and 1, got '{value}'", line, field_name)
    return discount.quantize(CENTS, rounding=ROUND_HALF_UP)


def _parse_quantity(value: str, field_name: str, line: int) -> int:
    # Plain ASCII digits only; int() would also take "1_000" or "+5"
    if not (value.isascii() and value.isdigit()):
        raise DecodeError(f"Invalid quantity '{value}'", line, field_name)
    quantity = int(value)
    if quantity <= 0:
        raise DecodeError(f"Quantity must be positive, got {quantity}", line, field_name)
    if quantity > MAX_QUANTITY:
        raise DecodeError(f"Quantity out of range '{value}'", line, field_name)
    return quantity


def _parse_date(value: str, field_name: str, line: int) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        pass
    # Full timestamps are accepted, only the date part is kept
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError as e:
        raise DecodeError(f"Invalid date '{value}'", line, field_name) from e


class RecordDecoder:
    """
    Streaming CSV decoder for the sales extract.

    The header row is read and checked up front; rows are then decoded
    lazily by iterating the decoder.
    """

    def __init__(self, stream: TextIO, columns: dict[str, str] | None = None):
        """
        Args:
            stream: Open text stream positioned at the header row
            columns: Field -> header mapping (default: DEFAULT_COLUMNS)
        """
        self.columns = columns or DEFAULT_COLUMNS
        self._reader = csv.reader(stream, strict=True)
        self._index = self._read_header()

    def _read_header(self) -> dict[str, int]:
        try:
            header = next(self._reader)
        except StopIteration:
            raise DecodeError("Source is empty, expected a header row", 1) from None
        except csv.Error as e:
            raise DecodeError(f"Malformed header: {e}", 1) from e

        names = [h.strip() for h in header]
        if names:
            names[0] = names[0].lstrip("\ufeff")
        self._width = len(names)

        positions = {name: i for i, name in enumerate(names)}
        missing = [h for h in self.columns.values() if h not in positions]
        if missing:
            raise DecodeError(f"Missing columns: {', '.join(missing)}", 1)

        return {field_name: positions[header] for field_name, header in self.columns.items()}

    def __iter__(self) -> Iterator[SaleRecord]:
        while True:
            try:
                row = next(self._reader)
            except StopIteration:
                return
            except csv.Error as e:
                raise DecodeError(f"Malformed CSV: {e}", self._reader.line_num) from e

            # Skip empty lines
            if not row or all(not cell.strip() for cell in row):
                continue

            yield self.decode(row, self._reader.line_num)

    def decode(self, row: list[str], line: int) -> SaleRecord:
        """Decode one raw CSV row into a SaleRecord."""
        if len(row) != self._width:
            raise DecodeError(
                f"Expected {self._width} cells, got {len(row)}",
                line,
            )

        values = {}
        for field_name, position in self._index.items():
            value = row[position].strip()
            if not value:
                raise DecodeError(
                    f"Required field '{self.columns[field_name]}' is empty",
                    line,
                    field_name,
                )
            values[field_name] = value

        return SaleRecord(
            line=line,
            order_id=values["order_id"],
            product_id=values["product_id"],
            customer_id=values["customer_id"],
            product_name=values["product_name"],
            category=values["category"],
            region=values["region"],
            order_date=_parse_date(values["order_date"], "order_date", line),
            quantity=_parse_quantity(values["quantity"], "quantity", line),
            unit_price=_parse_money(values["unit_price"], "unit_price", line),
            discount=_parse_discount(values["discount"], "discount", line),
            shipping_cost=_parse_money(values["shipping_cost"], "shipping_cost", line),
            payment_method=values["payment_method"],
            customer_name=values["customer_name"],
            customer_email=values["customer_email"],
            customer_address=values["customer_address"],
        )
