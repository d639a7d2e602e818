"""Quotes and invoices as ordered line items with eagerly maintained totals."""

from __future__ import annotations

import datetime as dt
import json
from typing import Any, Iterable, Mapping, Sequence

from .errors import ValidationError
from .pricing import (
    DocumentTotals,
    LineItem,
    Tariff,
    next_line,
    recompute_line,
    recompute_totals,
    update_line,
)

QUOTE = "quote"
INVOICE = "invoice"

QUOTE_STATUSES = ("brouillon", "envoye", "accepte", "refuse", "expire")
INVOICE_STATUSES = ("brouillon", "envoyee", "payee", "en_retard")

STATUSES = {QUOTE: QUOTE_STATUSES, INVOICE: INVOICE_STATUSES}
DEFAULT_TAX = {QUOTE: 21.0, INVOICE: 0.0}
NUMBER_PREFIX = {QUOTE: "DEV", INVOICE: "FAC"}

INVOICE_PAYMENT_TERM_DAYS = 30


def _as_percent(value: Any, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid tax percent: {value!r}") from exc


def default_line(today: dt.date | None = None) -> LineItem:
    return LineItem.from_dict(
        {"date": (today or dt.date.today()).isoformat(), "heure_debut": "09:00", "heure_fin": "17:00"}
    )


class Document:
    """A quote or invoice being edited.

    ``subtotal``, ``tax_amount`` and ``total`` are recomputed whenever the
    lines or the tax percent change and are never set directly.
    """

    def __init__(
        self,
        *,
        kind: str,
        lines: Iterable[LineItem] = (),
        tax_percent: float | None = None,
        status: str = "brouillon",
        catalog: Sequence[Tariff] = (),
    ) -> None:
        if kind not in STATUSES:
            raise ValidationError(f"Unknown document kind: {kind}")
        self.kind = kind
        self.catalog = list(catalog)
        self.lines = list(lines)
        self.tax_percent = _as_percent(tax_percent, DEFAULT_TAX[kind])
        self.status = status
        self._validate_status(status)
        self._totals = recompute_totals(self.lines, self.tax_percent)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def from_record(
        cls,
        *,
        kind: str,
        record: Mapping[str, Any],
        catalog: Sequence[Tariff] = (),
        reprice: bool = False,
    ) -> "Document":
        """Rebuild a document from a stored row or an incoming payload.

        ``lignes`` may be a JSON string or a list of mappings. With
        ``reprice`` every line re-resolves its tariff from its date.
        """

        raw_lines = record.get("lignes") or []
        if isinstance(raw_lines, str):
            try:
                raw_lines = json.loads(raw_lines)
            except ValueError as exc:
                raise ValidationError("Line items are not valid JSON") from exc
        if not isinstance(raw_lines, list):
            raise ValidationError("Line items must be a list")
        lines = [LineItem.from_dict(item) for item in raw_lines]
        if reprice:
            for line in lines:
                recompute_line(line, "date", catalog)
        return cls(
            kind=kind,
            lines=lines,
            tax_percent=record.get("tva"),
            status=record.get("statut") or "brouillon",
            catalog=catalog,
        )

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------
    @property
    def totals(self) -> DocumentTotals:
        return self._totals

    @property
    def subtotal(self) -> float:
        return self._totals.subtotal

    @property
    def tax_amount(self) -> float:
        return self._totals.tax_amount

    @property
    def total(self) -> float:
        return self._totals.total

    def recompute(self) -> DocumentTotals:
        self._totals = recompute_totals(self.lines, self.tax_percent)
        return self._totals

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------
    def _validate_status(self, status: str) -> None:
        if status not in STATUSES[self.kind]:
            raise ValidationError(f"Invalid {self.kind} status: {status}")

    def set_status(self, status: str) -> None:
        self._validate_status(status)
        self.status = status

    def set_tax_percent(self, value: Any) -> DocumentTotals:
        self.tax_percent = _as_percent(value, DEFAULT_TAX[self.kind])
        return self.recompute()

    def add_line(self, line: LineItem | None = None) -> LineItem:
        if line is None:
            line = next_line(self.lines[-1]) if self.lines else default_line()
        self.lines.append(line)
        self.recompute()
        return line

    def remove_line(self, index: int) -> LineItem:
        if len(self.lines) <= 1:
            raise ValidationError("A document needs at least one line")
        try:
            line = self.lines.pop(index)
        except IndexError as exc:
            raise ValidationError(f"No line at position {index}") from exc
        self.recompute()
        return line

    def edit_line(self, index: int, field: str, value: Any) -> LineItem:
        try:
            line = self.lines[index]
        except IndexError as exc:
            raise ValidationError(f"No line at position {index}") from exc
        update_line(line, field, value, self.catalog)
        self.recompute()
        return line

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------
    def to_record(self) -> dict:
        """Return the persisted shape of the document's priced content."""

        return {
            "lignes": [line.to_dict() for line in self.lines],
            "montant_ht": self.subtotal,
            "tva": self.tax_percent,
            "montant_ttc": self.total,
            "statut": self.status,
        }


def invoice_from_quote(quote: Document) -> Document:
    """Start an invoice carrying a quote's lines and tax percent."""

    if quote.kind != QUOTE:
        raise ValidationError("Only quotes can be converted to invoices")
    if quote.status != "accepte":
        raise ValidationError("Only accepted quotes can be invoiced")
    lines = [LineItem.from_dict(line.to_dict()) for line in quote.lines]
    return Document(kind=INVOICE, lines=lines, tax_percent=quote.tax_percent, catalog=quote.catalog)
