"""Core orchestration logic for the NannySitting agency back office."""

from __future__ import annotations

import datetime as dt
import json
import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Mapping, Sequence

from .database import get_connection, initialize_database
from .documents import (
    INVOICE,
    INVOICE_PAYMENT_TERM_DAYS,
    NUMBER_PREFIX,
    QUOTE,
    Document,
    invoice_from_quote,
)
from .errors import NotFoundError, ValidationError
from .pricing import (
    DAY_TYPE_STORAGE,
    LineItem,
    Tariff,
    mission_amount,
    parse_date,
    parse_time,
    recompute_totals,
    update_line,
)
from .ratelimit import RateLimiter
from .schedule import MISSION_STATUSES, Mission, assign_color_bands, group_by_day, period_bounds

logger = logging.getLogger(__name__)

CLIENT_STATUSES = ("prospect", "client")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

DOCUMENT_TABLES = {QUOTE: "quotes", INVOICE: "invoices"}
DOCUMENT_DATE_COLUMNS = {QUOTE: "date_validite", INVOICE: "date_echeance"}
DOCUMENT_LABELS = {QUOTE: "Quote", INVOICE: "Invoice"}

_UNSET: Any = object()

__all__ = ["AgencySystem", "NotFoundError", "ValidationError"]


class AgencySystem:
    """Entry point for every back office operation, backed by one SQLite connection."""

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        rate_limiter: RateLimiter | None = None,
        contact_recipient: str = "contact@nannysitting.be",
    ) -> None:
        self.conn = get_connection(db_path)
        initialize_database(self.conn)
        self.rate_limiter = rate_limiter
        self.contact_recipient = contact_recipient
        # one connection is shared by every request thread
        self._lock = threading.RLock()
        self._depth = 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the connection for a unit of work.

        The outermost block commits when it finishes and rolls back when it
        raises; nested blocks join the enclosing one.
        """

        with self._lock:
            outermost = self._depth == 0
            self._depth += 1
            try:
                yield self.conn
            except BaseException:
                if outermost:
                    self.conn.rollback()
                raise
            else:
                if outermost:
                    self.conn.commit()
            finally:
                self._depth -= 1

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[dict]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _query_one(self, sql: str, params: Sequence[Any] = ()) -> dict | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _get_next_sequence(self, name: str) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT value FROM metadata WHERE key = ?", (f"seq_{name}",)
            ).fetchone()
            current = int(row["value"]) if row else 0
            next_value = current + 1
            conn.execute(
                """
                INSERT INTO metadata(key, value) VALUES(?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (f"seq_{name}", str(next_value)),
            )
        return next_value

    def _fetch_one(self, sql: str, params: Sequence[Any], missing: str) -> dict:
        row = self._query_one(sql, params)
        if not row:
            raise NotFoundError(missing)
        return row

    def _update_row(self, table: str, row_id: int, changes: Mapping[str, Any]) -> None:
        if not changes:
            return
        assignments = ", ".join(f"{column} = ?" for column in changes)
        self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            (*changes.values(), row_id),
        )

    @staticmethod
    def _require_text(value: str | None, label: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValidationError(f"{label} is required")
        return value

    @staticmethod
    def _clean_email(email: str | None) -> str | None:
        if not email:
            return None
        email = email.strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Email address is not valid")
        return email

    @staticmethod
    def _clean_time(value: Any, label: str) -> str:
        parsed = parse_time(value)
        if parsed is None:
            raise ValidationError(f"{label} must be formatted as HH:MM")
        return parsed.strftime("%H:%M")

    @staticmethod
    def _clean_rate(value: Any) -> float | None:
        if value is None or value == "":
            return None
        try:
            rate = float(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid hourly rate: {value!r}") from exc
        if rate < 0:
            raise ValidationError("Hourly rate cannot be negative")
        return rate

    # ------------------------------------------------------------------
    # Company profile
    # ------------------------------------------------------------------
    def get_company(self) -> dict:
        row = self._query_one("SELECT * FROM company WHERE id = 1")
        return row or {
            "id": 1,
            "denomination_sociale": "",
            "adresse_siege": "",
            "numero_tva": "",
            "email": None,
            "telephone": None,
            "site_web": None,
            "logo_url": None,
        }

    def update_company(self, **fields: Any) -> dict:
        allowed = {
            "denomination_sociale",
            "adresse_siege",
            "numero_tva",
            "email",
            "telephone",
            "site_web",
            "logo_url",
        }
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(f"Unknown company fields: {', '.join(sorted(unknown))}")
        if "email" in fields:
            fields["email"] = self._clean_email(fields["email"])
        with self._transaction() as conn:
            conn.execute("INSERT OR IGNORE INTO company(id) VALUES (1)")
            self._update_row("company", 1, {**fields, "updated_at": dt.datetime.now().isoformat()})
        return self.get_company()

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------
    def register_client(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str | None = None,
        phone: str | None = None,
        address: str | None = None,
        postcode: str | None = None,
        city: str | None = None,
        status: str = "prospect",
        requested_service: str | None = None,
        message: str | None = None,
        notes: str | None = None,
    ) -> dict:
        if status not in CLIENT_STATUSES:
            raise ValidationError(f"Invalid client status: {status}")
        values = (
            self._require_text(first_name, "First name"),
            (last_name or "").strip(),
            self._clean_email(email),
            phone,
            address,
            postcode,
            city,
            status,
            requested_service,
            message,
            notes,
        )
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO clients(
                    prenom, nom, email, telephone, adresse, code_postal, ville, statut,
                    service_souhaite, message, notes
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                values,
            )
        logger.info("Registered %s %s", status, cur.lastrowid)
        return self.get_client(cur.lastrowid)

    def get_client(self, client_id: int) -> dict:
        return self._fetch_one("SELECT * FROM clients WHERE id = ?", (client_id,), "Client not found")

    def update_client(self, client_id: int, **fields: Any) -> dict:
        self.get_client(client_id)
        columns = {
            "first_name": "prenom",
            "last_name": "nom",
            "email": "email",
            "phone": "telephone",
            "address": "adresse",
            "postcode": "code_postal",
            "city": "ville",
            "status": "statut",
            "requested_service": "service_souhaite",
            "message": "message",
            "notes": "notes",
        }
        changes: dict[str, Any] = {}
        for name, value in fields.items():
            if name not in columns:
                raise ValidationError(f"Unknown client field: {name}")
            if name == "status" and value not in CLIENT_STATUSES:
                raise ValidationError(f"Invalid client status: {value}")
            if name == "email":
                value = self._clean_email(value)
            if name == "first_name":
                value = self._require_text(value, "First name")
            changes[columns[name]] = value
        changes["updated_at"] = dt.datetime.now().isoformat()
        with self._transaction():
            self._update_row("clients", client_id, changes)
        return self.get_client(client_id)

    def list_clients(self, *, status: str | None = None, search: str | None = None) -> list[dict]:
        """Return clients ordered by last name, optionally filtered."""

        conditions: list[str] = []
        params: list[Any] = []
        if status is not None:
            conditions.append("statut = ?")
            params.append(status)
        if search:
            conditions.append(
                "(LOWER(prenom || ' ' || nom) LIKE ? OR LOWER(COALESCE(email, '')) LIKE ?)"
            )
            pattern = f"%{search.lower()}%"
            params.extend([pattern, pattern])
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        return self._query("SELECT * FROM clients" + where + " ORDER BY nom, prenom", params)

    def delete_client(self, client_id: int) -> None:
        self.get_client(client_id)
        with self._transaction() as conn:
            conn.execute("DELETE FROM clients WHERE id = ?", (client_id,))

    # ------------------------------------------------------------------
    # Nanny-sitters
    # ------------------------------------------------------------------
    def create_nannysitter(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str | None = None,
        phone: str | None = None,
        skills: str | None = None,
        hourly_rate: float | None = None,
        active: bool = True,
    ) -> dict:
        values = (
            self._require_text(first_name, "First name"),
            self._require_text(last_name, "Last name"),
            self._clean_email(email),
            phone,
            skills,
            self._clean_rate(hourly_rate),
            int(active),
        )
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO nannysitters(prenom, nom, email, telephone, competences, tarif_horaire, actif)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                values,
            )
        return self.get_nannysitter(cur.lastrowid)

    def get_nannysitter(self, nannysitter_id: int) -> dict:
        return self._fetch_one(
            "SELECT * FROM nannysitters WHERE id = ?", (nannysitter_id,), "Nanny-sitter not found"
        )

    def update_nannysitter(self, nannysitter_id: int, **fields: Any) -> dict:
        self.get_nannysitter(nannysitter_id)
        columns = {
            "first_name": "prenom",
            "last_name": "nom",
            "email": "email",
            "phone": "telephone",
            "skills": "competences",
            "hourly_rate": "tarif_horaire",
            "active": "actif",
        }
        changes: dict[str, Any] = {}
        for name, value in fields.items():
            if name not in columns:
                raise ValidationError(f"Unknown nanny-sitter field: {name}")
            if name == "hourly_rate":
                value = self._clean_rate(value)
            elif name == "active":
                value = int(bool(value))
            elif name == "email":
                value = self._clean_email(value)
            changes[columns[name]] = value
        changes["updated_at"] = dt.datetime.now().isoformat()
        with self._transaction():
            self._update_row("nannysitters", nannysitter_id, changes)
        return self.get_nannysitter(nannysitter_id)

    def list_nannysitters(self, *, active_only: bool = False) -> list[dict]:
        where = " WHERE actif = 1" if active_only else ""
        return self._query("SELECT * FROM nannysitters" + where + " ORDER BY nom, prenom")

    def delete_nannysitter(self, nannysitter_id: int) -> None:
        self.get_nannysitter(nannysitter_id)
        with self._transaction() as conn:
            conn.execute("DELETE FROM nannysitters WHERE id = ?", (nannysitter_id,))

    # ------------------------------------------------------------------
    # Tariff catalog
    # ------------------------------------------------------------------
    def create_tariff(
        self,
        *,
        name: str,
        hourly_rate: float,
        day_type: str = "weekday",
        active: bool = True,
    ) -> dict:
        rate = self._clean_rate(hourly_rate)
        if rate is None:
            raise ValidationError("Hourly rate is required")
        tariff = Tariff(
            name=self._require_text(name, "Tariff name"),
            hourly_rate=rate,
            day_type=day_type,
            active=active,
        )
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT INTO tarifs(nom, tarif_horaire, type_jour, actif) VALUES (?, ?, ?, ?)",
                (tariff.name, tariff.hourly_rate, DAY_TYPE_STORAGE[tariff.day_type], int(tariff.active)),
            )
        logger.info("Created tariff %s (%s, %.2f/h)", tariff.name, tariff.day_type, tariff.hourly_rate)
        return self.get_tariff(cur.lastrowid)

    def get_tariff(self, tariff_id: int) -> dict:
        row = self._fetch_one("SELECT * FROM tarifs WHERE id = ?", (tariff_id,), "Tariff not found")
        return Tariff.from_row(row).to_dict()

    def update_tariff(
        self,
        tariff_id: int,
        *,
        name: str | None = None,
        hourly_rate: float | None = None,
        day_type: str | None = None,
        active: bool | None = None,
    ) -> dict:
        current = Tariff.from_row(
            self._fetch_one("SELECT * FROM tarifs WHERE id = ?", (tariff_id,), "Tariff not found")
        )
        updated = Tariff(
            name=self._require_text(name, "Tariff name") if name is not None else current.name,
            hourly_rate=(
                self._clean_rate(hourly_rate) if hourly_rate not in (None, "") else current.hourly_rate
            ),
            day_type=day_type or current.day_type,
            active=current.active if active is None else active,
            id=tariff_id,
        )
        with self._transaction():
            self._update_row(
                "tarifs",
                tariff_id,
                {
                    "nom": updated.name,
                    "tarif_horaire": updated.hourly_rate,
                    "type_jour": DAY_TYPE_STORAGE[updated.day_type],
                    "actif": int(updated.active),
                },
            )
        return updated.to_dict()

    def list_tariffs(self, *, active_only: bool = False) -> list[dict]:
        return [tariff.to_dict() for tariff in self._tariffs(active_only=active_only)]

    def _tariffs(self, *, active_only: bool) -> list[Tariff]:
        where = " WHERE actif = 1" if active_only else ""
        rows = self._query("SELECT * FROM tarifs" + where + " ORDER BY nom, id")
        return [Tariff.from_row(row) for row in rows]

    def active_catalog(self) -> list[Tariff]:
        """Return active tariffs in the order the resolver scans them."""

        return self._tariffs(active_only=True)

    def delete_tariff(self, tariff_id: int) -> None:
        self.get_tariff(tariff_id)
        with self._transaction() as conn:
            conn.execute("DELETE FROM tarifs WHERE id = ?", (tariff_id,))

    # ------------------------------------------------------------------
    # Line pricing
    # ------------------------------------------------------------------
    def price_line(self, *, line: Mapping[str, Any], field: str, value: Any) -> dict:
        """Apply one edit to a wire-format line and return the repriced line."""

        item = LineItem.from_dict(line)
        update_line(item, field, value, self.active_catalog())
        return item.to_dict()

    def preview_totals(self, *, lines: Iterable[Mapping[str, Any]], tax_percent: float) -> dict:
        totals = recompute_totals([LineItem.from_dict(line) for line in lines], float(tax_percent))
        return {
            "montant_ht": totals.subtotal,
            "montant_tva": totals.tax_amount,
            "montant_ttc": totals.total,
        }

    # ------------------------------------------------------------------
    # Missions
    # ------------------------------------------------------------------
    _MISSION_SELECT = """
        SELECT missions.*,
               clients.prenom || ' ' || clients.nom AS client_name,
               nannysitters.prenom || ' ' || nannysitters.nom AS sitter_name,
               nannysitters.tarif_horaire AS tarif_horaire
        FROM missions
        JOIN clients ON clients.id = missions.client_id
        LEFT JOIN nannysitters ON nannysitters.id = missions.nannysitter_id
    """

    def create_missions(
        self,
        *,
        client_id: int,
        dates: Sequence[str | dt.date],
        start_time: str = "09:00",
        end_time: str = "18:00",
        nannysitter_id: int | None = None,
        description: str | None = None,
        status: str = "planifie",
        times_by_date: Mapping[str, tuple[str, str]] | None = None,
    ) -> list[dict]:
        """Create one mission per selected date.

        ``times_by_date`` overrides the start and end time for individual
        ISO dates. Each mission's amount is priced from the tariff catalog.
        """

        if not dates:
            raise ValidationError("Select at least one date")
        if status not in MISSION_STATUSES:
            raise ValidationError(f"Invalid mission status: {status}")
        self.get_client(client_id)
        if nannysitter_id is not None:
            self.get_nannysitter(nannysitter_id)
        slots: list[tuple[dt.date, str, str]] = []
        for value in dates:
            day = parse_date(value)
            start, end = (times_by_date or {}).get(day.isoformat(), (start_time, end_time))
            slots.append(
                (day, self._clean_time(start, "Start time"), self._clean_time(end, "End time"))
            )
        catalog = self.active_catalog()
        created: list[int] = []
        with self._transaction() as conn:
            for day, start, end in slots:
                cur = conn.execute(
                    """
                    INSERT INTO missions(
                        client_id, nannysitter_id, date, heure_debut, heure_fin, description, montant, statut
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        client_id,
                        nannysitter_id,
                        day.isoformat(),
                        start,
                        end,
                        description,
                        mission_amount(day, start, end, catalog),
                        status,
                    ),
                )
                created.append(cur.lastrowid)
        logger.info("Created %s mission(s) for client %s", len(created), client_id)
        return [self.get_mission(mission_id) for mission_id in created]

    def _load_mission(self, mission_id: int) -> Mission:
        row = self._fetch_one(
            self._MISSION_SELECT + " WHERE missions.id = ?", (mission_id,), "Mission not found"
        )
        return Mission.from_row(row)

    def get_mission(self, mission_id: int) -> dict:
        return self._load_mission(mission_id).to_dict()

    def update_mission(
        self,
        mission_id: int,
        *,
        date: str | dt.date | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
        nannysitter_id: int | None = _UNSET,
        description: str | None = _UNSET,
        status: str | None = None,
        amount: float | None = _UNSET,
    ) -> dict:
        """Update a mission, repricing it unless ``amount`` is given."""

        mission = self._load_mission(mission_id)
        changes: dict[str, Any] = {}
        day = parse_date(date) if date is not None else mission.date
        start = self._clean_time(start_time, "Start time") if start_time else mission.start_time
        end = self._clean_time(end_time, "End time") if end_time else mission.end_time
        changes.update({"date": day.isoformat(), "heure_debut": start, "heure_fin": end})
        if status is not None:
            if status not in MISSION_STATUSES:
                raise ValidationError(f"Invalid mission status: {status}")
            changes["statut"] = status
        if nannysitter_id is not _UNSET:
            if nannysitter_id is not None:
                self.get_nannysitter(nannysitter_id)
            changes["nannysitter_id"] = nannysitter_id
        if description is not _UNSET:
            changes["description"] = description
        if amount is _UNSET:
            changes["montant"] = mission_amount(day, start, end, self.active_catalog())
        else:
            changes["montant"] = amount
        with self._transaction():
            self._update_row("missions", mission_id, changes)
        return self.get_mission(mission_id)

    def delete_mission(self, mission_id: int) -> None:
        self._load_mission(mission_id)
        with self._transaction() as conn:
            conn.execute("DELETE FROM missions WHERE id = ?", (mission_id,))

    def list_missions(
        self,
        *,
        start_date: str | dt.date,
        end_date: str | dt.date,
        nannysitter_id: int | None = None,
        client_id: int | None = None,
    ) -> list[Mission]:
        """Return missions between two dates inclusive, by date then start time."""

        conditions = ["missions.date >= ?", "missions.date <= ?"]
        params: list[Any] = [parse_date(start_date).isoformat(), parse_date(end_date).isoformat()]
        if nannysitter_id is not None:
            conditions.append("missions.nannysitter_id = ?")
            params.append(nannysitter_id)
        if client_id is not None:
            conditions.append("missions.client_id = ?")
            params.append(client_id)
        rows = self._query(
            self._MISSION_SELECT
            + " WHERE "
            + " AND ".join(conditions)
            + " ORDER BY missions.date, missions.heure_debut, missions.id",
            params,
        )
        return [Mission.from_row(row) for row in rows]

    def calendar_view(self, *, view: str = "month", anchor: str | dt.date | None = None) -> dict:
        start, end = period_bounds(view, anchor or dt.date.today())
        missions = assign_color_bands(self.list_missions(start_date=start, end_date=end))
        return {
            "view": view,
            "start": start.isoformat(),
            "end": end.isoformat(),
            "missions": [mission.to_dict() for mission in missions],
            "days": {
                day: [mission.to_dict() for mission in day_missions]
                for day, day_missions in group_by_day(missions).items()
            },
        }

    def sitter_payout_report(
        self,
        *,
        nannysitter_id: int,
        start_date: str | dt.date,
        end_date: str | dt.date,
    ) -> dict:
        """Return what a sitter is owed for the missions in a period."""

        sitter = self.get_nannysitter(nannysitter_id)
        missions = self.list_missions(
            start_date=start_date, end_date=end_date, nannysitter_id=nannysitter_id
        )
        rows = []
        for mission in missions:
            row = mission.to_dict()
            row.update(
                {
                    "heures": mission.hours,
                    "heures_facturees": mission.billed_hours,
                    "remuneration": mission.payout,
                }
            )
            rows.append(row)
        return {
            "nannysitter": sitter,
            "start": parse_date(start_date).isoformat(),
            "end": parse_date(end_date).isoformat(),
            "tarif_horaire": sitter["tarif_horaire"],
            "missions": rows,
            "total_hours": sum(mission.hours for mission in missions),
            "total_payout": sum(mission.payout for mission in missions),
        }

    # ------------------------------------------------------------------
    # Quotes & invoices
    # ------------------------------------------------------------------
    def _generate_number(self, kind: str, issue_date: dt.date) -> str:
        sequence = self._get_next_sequence(f"{kind}_{issue_date.year}")
        return f"{NUMBER_PREFIX[kind]}-{issue_date.year}-{sequence:04d}"

    def _load_document(self, kind: str, document_id: int) -> dict:
        return self._fetch_one(
            f"SELECT * FROM {DOCUMENT_TABLES[kind]} WHERE id = ?",
            (document_id,),
            f"{DOCUMENT_LABELS[kind]} not found",
        )

    def _present_document(self, kind: str, row: dict) -> dict:
        document = Document.from_record(kind=kind, record=row)
        row = dict(row)
        row["lignes"] = [line.to_dict() for line in document.lines]
        row["montant_tva"] = document.tax_amount
        return row

    def _create_document(
        self,
        kind: str,
        *,
        client_id: int,
        lines: Sequence[Mapping[str, Any]],
        tax_percent: float | None,
        status: str,
        document_date: str | None,
        notes: str | None,
        issue_date: dt.date | None,
        reprice: bool,
        quote_id: int | None = None,
    ) -> dict:
        self.get_client(client_id)
        if not lines:
            raise ValidationError("A document needs at least one line")
        document = Document.from_record(
            kind=kind,
            record={"lignes": list(lines), "tva": tax_percent, "statut": status},
            catalog=self.active_catalog() if reprice else (),
            reprice=reprice,
        )
        issued = parse_date(issue_date) if issue_date else dt.date.today()
        record = document.to_record()
        columns = {
            "client_id": client_id,
            "numero": None,
            "date_emission": issued.isoformat(),
            DOCUMENT_DATE_COLUMNS[kind]: parse_date(document_date).isoformat() if document_date else None,
            "lignes": json.dumps(record["lignes"]),
            "montant_ht": record["montant_ht"],
            "tva": record["tva"],
            "montant_ttc": record["montant_ttc"],
            "statut": record["statut"],
            "notes": notes,
        }
        if kind == INVOICE:
            columns["quote_id"] = quote_id
        placeholders = ", ".join("?" for _ in columns)
        # the number is only drawn once every field has been validated
        with self._transaction() as conn:
            columns["numero"] = self._generate_number(kind, issued)
            try:
                cur = conn.execute(
                    f"INSERT INTO {DOCUMENT_TABLES[kind]}({', '.join(columns)}) VALUES ({placeholders})",
                    tuple(columns.values()),
                )
            except sqlite3.IntegrityError as exc:
                raise ValidationError(f"Could not save {kind}: {exc}") from exc
        logger.info("Created %s %s (total %.2f)", kind, columns["numero"], record["montant_ttc"])
        return self._present_document(kind, self._load_document(kind, cur.lastrowid))

    def _update_document(
        self,
        kind: str,
        document_id: int,
        *,
        client_id: int | None,
        lines: Sequence[Mapping[str, Any]] | None,
        tax_percent: float | None,
        status: str | None,
        document_date: str | None,
        notes: str | None,
        reprice: bool,
    ) -> dict:
        row = self._load_document(kind, document_id)
        if kind == QUOTE and row["statut"] == "accepte":
            raise ValidationError("An accepted quote can no longer be modified")
        if lines is not None and not lines:
            raise ValidationError("A document needs at least one line")
        document = Document.from_record(
            kind=kind,
            record={
                "lignes": list(lines) if lines is not None else row["lignes"],
                "tva": row["tva"] if tax_percent is None else tax_percent,
                "statut": status or row["statut"],
            },
            catalog=self.active_catalog() if reprice else (),
            reprice=reprice,
        )
        record = document.to_record()
        changes: dict[str, Any] = {
            "lignes": json.dumps(record["lignes"]),
            "montant_ht": record["montant_ht"],
            "tva": record["tva"],
            "montant_ttc": record["montant_ttc"],
            "statut": record["statut"],
        }
        if client_id is not None:
            self.get_client(client_id)
            changes["client_id"] = client_id
        if document_date is not None:
            changes[DOCUMENT_DATE_COLUMNS[kind]] = parse_date(document_date).isoformat()
        if notes is not None:
            changes["notes"] = notes
        with self._transaction():
            self._update_row(DOCUMENT_TABLES[kind], document_id, changes)
        return self._present_document(kind, self._load_document(kind, document_id))

    def _list_documents(
        self,
        kind: str,
        *,
        client_id: int | None,
        status: str | None,
        search: str | None,
    ) -> list[dict]:
        table = DOCUMENT_TABLES[kind]
        conditions: list[str] = []
        params: list[Any] = []
        if client_id is not None:
            conditions.append(f"{table}.client_id = ?")
            params.append(client_id)
        if status is not None:
            conditions.append(f"{table}.statut = ?")
            params.append(status)
        if search:
            conditions.append(
                f"(LOWER({table}.numero) LIKE ? OR LOWER(clients.prenom || ' ' || clients.nom) LIKE ?)"
            )
            pattern = f"%{search.lower()}%"
            params.extend([pattern, pattern])
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        rows = self._query(
            f"""
            SELECT {table}.*, clients.prenom || ' ' || clients.nom AS client_name
            FROM {table}
            JOIN clients ON clients.id = {table}.client_id
            {where}
            ORDER BY {table}.date_emission DESC, {table}.id DESC
            """,
            params,
        )
        return [self._present_document(kind, row) for row in rows]

    def create_quote(
        self,
        *,
        client_id: int,
        lines: Sequence[Mapping[str, Any]],
        tax_percent: float | None = None,
        status: str = "brouillon",
        valid_until: str | None = None,
        notes: str | None = None,
        issue_date: dt.date | None = None,
        reprice: bool = False,
    ) -> dict:
        return self._create_document(
            QUOTE,
            client_id=client_id,
            lines=lines,
            tax_percent=tax_percent,
            status=status,
            document_date=valid_until,
            notes=notes,
            issue_date=issue_date,
            reprice=reprice,
        )

    def get_quote(self, quote_id: int) -> dict:
        return self._present_document(QUOTE, self._load_document(QUOTE, quote_id))

    def update_quote(
        self,
        quote_id: int,
        *,
        client_id: int | None = None,
        lines: Sequence[Mapping[str, Any]] | None = None,
        tax_percent: float | None = None,
        status: str | None = None,
        valid_until: str | None = None,
        notes: str | None = None,
        reprice: bool = False,
    ) -> dict:
        return self._update_document(
            QUOTE,
            quote_id,
            client_id=client_id,
            lines=lines,
            tax_percent=tax_percent,
            status=status,
            document_date=valid_until,
            notes=notes,
            reprice=reprice,
        )

    def list_quotes(
        self,
        *,
        client_id: int | None = None,
        status: str | None = None,
        search: str | None = None,
    ) -> list[dict]:
        return self._list_documents(QUOTE, client_id=client_id, status=status, search=search)

    def delete_quote(self, quote_id: int) -> None:
        row = self._load_document(QUOTE, quote_id)
        if row["statut"] == "accepte":
            raise ValidationError("An accepted quote cannot be deleted")
        with self._transaction() as conn:
            conn.execute("DELETE FROM quotes WHERE id = ?", (quote_id,))

    def create_invoice(
        self,
        *,
        client_id: int,
        lines: Sequence[Mapping[str, Any]],
        tax_percent: float | None = None,
        status: str = "brouillon",
        due_date: str | None = None,
        notes: str | None = None,
        issue_date: dt.date | None = None,
        reprice: bool = False,
        quote_id: int | None = None,
    ) -> dict:
        issued = issue_date or dt.date.today()
        if due_date is None:
            due_date = (issued + dt.timedelta(days=INVOICE_PAYMENT_TERM_DAYS)).isoformat()
        return self._create_document(
            INVOICE,
            client_id=client_id,
            lines=lines,
            tax_percent=tax_percent,
            status=status,
            document_date=due_date,
            notes=notes,
            issue_date=issued,
            reprice=reprice,
            quote_id=quote_id,
        )

    def get_invoice(self, invoice_id: int) -> dict:
        return self._present_document(INVOICE, self._load_document(INVOICE, invoice_id))

    def update_invoice(
        self,
        invoice_id: int,
        *,
        client_id: int | None = None,
        lines: Sequence[Mapping[str, Any]] | None = None,
        tax_percent: float | None = None,
        status: str | None = None,
        due_date: str | None = None,
        notes: str | None = None,
        reprice: bool = False,
    ) -> dict:
        return self._update_document(
            INVOICE,
            invoice_id,
            client_id=client_id,
            lines=lines,
            tax_percent=tax_percent,
            status=status,
            document_date=due_date,
            notes=notes,
            reprice=reprice,
        )

    def list_invoices(
        self,
        *,
        client_id: int | None = None,
        status: str | None = None,
        search: str | None = None,
    ) -> list[dict]:
        return self._list_documents(INVOICE, client_id=client_id, status=status, search=search)

    def delete_invoice(self, invoice_id: int) -> None:
        self._load_document(INVOICE, invoice_id)
        with self._transaction() as conn:
            conn.execute("DELETE FROM invoices WHERE id = ?", (invoice_id,))

    def convert_quote_to_invoice(
        self,
        quote_id: int,
        *,
        issue_date: dt.date | None = None,
        due_date: str | None = None,
    ) -> dict:
        """Invoice an accepted quote, carrying its lines, tax and notes."""

        with self._transaction():
            row = self._load_document(QUOTE, quote_id)
            existing = self._query_one("SELECT id FROM invoices WHERE quote_id = ?", (quote_id,))
            if existing:
                raise ValidationError("This quote has already been invoiced")
            invoice = invoice_from_quote(Document.from_record(kind=QUOTE, record=row))
            return self.create_invoice(
                client_id=row["client_id"],
                lines=invoice.to_record()["lignes"],
                tax_percent=invoice.tax_percent,
                due_date=due_date,
                notes=row["notes"],
                issue_date=issue_date,
                quote_id=quote_id,
            )

    # ------------------------------------------------------------------
    # Contact requests
    # ------------------------------------------------------------------
    def submit_contact_request(
        self,
        *,
        name: str,
        email: str,
        phone: str | None = None,
        service: str | None = None,
        message: str | None = None,
        remote_addr: str | None = None,
    ) -> dict:
        """Record a lead from the public form and queue the agency email."""

        name = self._require_text(name, "Name")
        email = self._clean_email(self._require_text(email, "Email"))
        if self.rate_limiter is not None:
            self.rate_limiter.hit(f"contact:{remote_addr or 'unknown'}")
        first_name, _, last_name = name.partition(" ")
        content = "\n".join(
            [
                f"Prénom: {first_name}",
                f"Nom: {last_name.strip()}",
                f"Service souhaité: {service or '-'}",
                f"Email: {email}",
                f"Téléphone: {phone or '-'}",
                "",
                message or "Aucun message spécifique",
            ]
        )
        with self._transaction() as conn:
            client = self.register_client(
                first_name=first_name,
                last_name=last_name.strip(),
                email=email,
                phone=phone,
                requested_service=service,
                message=message,
            )
            conn.execute(
                """
                INSERT INTO notifications(client_id, channel, recipient, subject, content, reply_to, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    client["id"],
                    "email",
                    self.contact_recipient,
                    f"Nouvelle demande de {name} - {service or 'contact'}",
                    content,
                    email,
                    json.dumps({"remote_addr": remote_addr}),
                ),
            )
        logger.info("Contact request recorded as prospect %s", client["id"])
        return client

    def list_notifications(self, *, status: str | None = None) -> list[dict]:
        params: list[Any] = []
        where = ""
        if status is not None:
            where = " WHERE status = ?"
            params.append(status)
        return self._query(
            "SELECT * FROM notifications" + where + " ORDER BY created_at DESC, id DESC",
            params,
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def dashboard(self, *, today: dt.date | None = None) -> dict:
        """Return the headline figures for the back office home page."""

        today = today or dt.date.today()
        month_start, month_end = period_bounds("month", today)
        month = (month_start.isoformat(), month_end.isoformat())
        with self._lock:
            counts = self.conn.execute(
                """
                SELECT
                    SUM(CASE WHEN statut = 'prospect' THEN 1 ELSE 0 END) AS prospects,
                    SUM(CASE WHEN statut = 'client' THEN 1 ELSE 0 END) AS clients
                FROM clients
                """
            ).fetchone()
            sitters = self.conn.execute(
                "SELECT COUNT(*) AS count FROM nannysitters WHERE actif = 1"
            ).fetchone()["count"]
            missions_this_month = self.conn.execute(
                "SELECT COUNT(*) AS count FROM missions WHERE date >= ? AND date <= ?", month
            ).fetchone()["count"]
            revenue = self.conn.execute(
                """
                SELECT COALESCE(SUM(montant_ttc), 0) AS total FROM invoices
                WHERE statut = 'payee' AND date_emission >= ? AND date_emission <= ?
                """,
                month,
            ).fetchone()["total"]
            recent_prospects = self.conn.execute(
                "SELECT * FROM clients WHERE statut = 'prospect' ORDER BY created_at DESC, id DESC LIMIT 5"
            ).fetchall()
            upcoming = self.conn.execute(
                self._MISSION_SELECT
                + " WHERE missions.date >= ? ORDER BY missions.date, missions.heure_debut LIMIT 5",
                (today.isoformat(),),
            ).fetchall()
        return {
            "prospects": counts["prospects"] or 0,
            "clients": counts["clients"] or 0,
            "nannysitters": sitters,
            "missions_this_month": missions_this_month,
            "revenue_this_month": revenue,
            "recent_prospects": recent_prospects,
            "upcoming_missions": [Mission.from_row(row).to_dict() for row in upcoming],
        }

    def close(self) -> None:
        with self._lock:
            self.conn.close()
