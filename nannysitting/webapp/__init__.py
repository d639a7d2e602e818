"""Flask application exposing the agency back office as a JSON API."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Mapping

from flask import Flask, jsonify, request

from nannysitting.agency.errors import NotFoundError, RateLimitExceeded, ValidationError
from nannysitting.agency.pricing import STORED_DAY_TYPES, parse_date
from nannysitting.agency.ratelimit import CounterStore, RateLimiter, build_store
from nannysitting.agency.system import AgencySystem

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "SECRET_KEY": "nannysitting-secret",
    "DATABASE_PATH": "nannysitting.db",
    "REDIS_URL": None,
    "CONTACT_RATE_LIMIT": 5,
    "CONTACT_RATE_WINDOW": 3600,
    "CONTACT_RECIPIENT": "contact@nannysitting.be",
}

# request keys -> AgencySystem keyword arguments
CLIENT_FIELDS = {
    "prenom": "first_name",
    "nom": "last_name",
    "email": "email",
    "telephone": "phone",
    "adresse": "address",
    "code_postal": "postcode",
    "ville": "city",
    "statut": "status",
    "service_souhaite": "requested_service",
    "message": "message",
    "notes": "notes",
}
NANNYSITTER_FIELDS = {
    "prenom": "first_name",
    "nom": "last_name",
    "email": "email",
    "telephone": "phone",
    "competences": "skills",
    "tarif_horaire": "hourly_rate",
    "actif": "active",
}
TARIFF_FIELDS = {
    "nom": "name",
    "tarif_horaire": "hourly_rate",
    "type_jour": "day_type",
    "actif": "active",
}
MISSION_FIELDS = {
    "date": "date",
    "heure_debut": "start_time",
    "heure_fin": "end_time",
    "nannysitter_id": "nannysitter_id",
    "description": "description",
    "statut": "status",
    "montant": "amount",
}


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _translate(data: Mapping[str, Any], fields: Mapping[str, str]) -> dict[str, Any]:
    return {fields[key]: value for key, value in data.items() if key in fields}


def _require_keys(data: Mapping[str, Any], *keys: str) -> Mapping[str, Any]:
    missing = [key for key in keys if key not in data]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    return data


def _tariff_arguments(data: Mapping[str, Any]) -> dict[str, Any]:
    arguments = _translate(data, TARIFF_FIELDS)
    if "day_type" in arguments:
        stored = arguments["day_type"]
        if stored not in STORED_DAY_TYPES:
            raise ValidationError(f"Unknown day type: {stored}")
        arguments["day_type"] = STORED_DAY_TYPES[stored]
    return arguments


def _int_arg(name: str) -> int | None:
    value = request.args.get(name)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer") from exc


def _issue_date(data: Mapping[str, Any]) -> dt.date | None:
    value = data.get("date_emission")
    return parse_date(value) if value else None


def create_app(
    database_path: str | None = None,
    *,
    config: Mapping[str, Any] | None = None,
    rate_limit_store: CounterStore | None = None,
) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(__name__)
    app.config.from_mapping(DEFAULT_CONFIG)
    app.config.from_prefixed_env("NANNYSITTING")
    if config:
        app.config.update(config)
    if database_path is not None:
        app.config["DATABASE_PATH"] = database_path

    limiter = RateLimiter(
        rate_limit_store or build_store(app.config["REDIS_URL"]),
        limit=int(app.config["CONTACT_RATE_LIMIT"]),
        window_seconds=int(app.config["CONTACT_RATE_WINDOW"]),
    )
    system = AgencySystem(
        app.config["DATABASE_PATH"],
        rate_limiter=limiter,
        contact_recipient=app.config["CONTACT_RECIPIENT"],
    )
    app.extensions["agency"] = system

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError) -> Any:
        return jsonify(error=str(exc)), 400

    @app.errorhandler(NotFoundError)
    def handle_not_found(exc: NotFoundError) -> Any:
        return jsonify(error=str(exc)), 404

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limited(exc: RateLimitExceeded) -> Any:
        response = jsonify(error=str(exc))
        response.status_code = 429
        response.headers["Retry-After"] = str(exc.retry_after)
        return response

    @app.get("/")
    def index() -> Any:
        return jsonify(name="nannysitting", company=system.get_company())

    @app.get("/dashboard")
    def dashboard() -> Any:
        return jsonify(system.dashboard())

    @app.route("/company", methods=["GET", "PUT"])
    def company() -> Any:
        if request.method == "PUT":
            return jsonify(system.update_company(**_payload()))
        return jsonify(system.get_company())

    # ------------------------------------------------------------------
    # Tariffs
    # ------------------------------------------------------------------
    @app.route("/tariffs", methods=["GET", "POST"])
    def tariffs() -> Any:
        if request.method == "POST":
            tariff = system.create_tariff(
                **_tariff_arguments(_require_keys(_payload(), "nom", "tarif_horaire"))
            )
            return jsonify(tariff), 201
        active_only = request.args.get("actif") in ("1", "true")
        return jsonify(system.list_tariffs(active_only=active_only))

    @app.route("/tariffs/<int:tariff_id>", methods=["GET", "PATCH", "DELETE"])
    def tariff_detail(tariff_id: int) -> Any:
        if request.method == "PATCH":
            return jsonify(system.update_tariff(tariff_id, **_tariff_arguments(_payload())))
        if request.method == "DELETE":
            system.delete_tariff(tariff_id)
            return "", 204
        return jsonify(system.get_tariff(tariff_id))

    # ------------------------------------------------------------------
    # Clients & nanny-sitters
    # ------------------------------------------------------------------
    @app.route("/clients", methods=["GET", "POST"])
    def clients() -> Any:
        if request.method == "POST":
            data = _require_keys(_payload(), "prenom")
            client = system.register_client(**{"last_name": "", **_translate(data, CLIENT_FIELDS)})
            return jsonify(client), 201
        return jsonify(
            system.list_clients(status=request.args.get("statut"), search=request.args.get("q"))
        )

    @app.route("/clients/<int:client_id>", methods=["GET", "PATCH", "DELETE"])
    def client_detail(client_id: int) -> Any:
        if request.method == "PATCH":
            return jsonify(system.update_client(client_id, **_translate(_payload(), CLIENT_FIELDS)))
        if request.method == "DELETE":
            system.delete_client(client_id)
            return "", 204
        return jsonify(system.get_client(client_id))

    @app.route("/nannysitters", methods=["GET", "POST"])
    def nannysitters() -> Any:
        if request.method == "POST":
            data = _require_keys(_payload(), "prenom", "nom")
            sitter = system.create_nannysitter(**_translate(data, NANNYSITTER_FIELDS))
            return jsonify(sitter), 201
        active_only = request.args.get("actif") in ("1", "true")
        return jsonify(system.list_nannysitters(active_only=active_only))

    @app.route("/nannysitters/<int:nannysitter_id>", methods=["GET", "PATCH", "DELETE"])
    def nannysitter_detail(nannysitter_id: int) -> Any:
        if request.method == "PATCH":
            return jsonify(
                system.update_nannysitter(
                    nannysitter_id, **_translate(_payload(), NANNYSITTER_FIELDS)
                )
            )
        if request.method == "DELETE":
            system.delete_nannysitter(nannysitter_id)
            return "", 204
        return jsonify(system.get_nannysitter(nannysitter_id))

    @app.get("/nannysitters/<int:nannysitter_id>/payouts")
    def nannysitter_payouts(nannysitter_id: int) -> Any:
        today = dt.date.today()
        start = request.args.get("start") or today.replace(day=1).isoformat()
        end = request.args.get("end") or today.isoformat()
        return jsonify(
            system.sitter_payout_report(
                nannysitter_id=nannysitter_id, start_date=start, end_date=end
            )
        )

    # ------------------------------------------------------------------
    # Missions & calendar
    # ------------------------------------------------------------------
    @app.route("/missions", methods=["GET", "POST"])
    def missions() -> Any:
        if request.method == "POST":
            data = _payload()
            if data.get("client_id") is None:
                raise ValidationError("client_id is required")
            created = system.create_missions(
                client_id=data["client_id"],
                dates=data.get("dates") or ([data["date"]] if data.get("date") else []),
                start_time=data.get("heure_debut", "09:00"),
                end_time=data.get("heure_fin", "18:00"),
                nannysitter_id=data.get("nannysitter_id"),
                description=data.get("description"),
                status=data.get("statut", "planifie"),
                times_by_date=data.get("horaires"),
            )
            return jsonify(created), 201
        today = dt.date.today()
        missions = system.list_missions(
            start_date=request.args.get("start") or today.isoformat(),
            end_date=request.args.get("end") or request.args.get("start") or today.isoformat(),
            nannysitter_id=_int_arg("nannysitter_id"),
            client_id=_int_arg("client_id"),
        )
        return jsonify([mission.to_dict() for mission in missions])

    @app.route("/missions/<int:mission_id>", methods=["GET", "PATCH", "DELETE"])
    def mission_detail(mission_id: int) -> Any:
        if request.method == "PATCH":
            return jsonify(
                system.update_mission(mission_id, **_translate(_payload(), MISSION_FIELDS))
            )
        if request.method == "DELETE":
            system.delete_mission(mission_id)
            return "", 204
        return jsonify(system.get_mission(mission_id))

    @app.get("/calendar")
    def calendar_view() -> Any:
        return jsonify(
            system.calendar_view(
                view=request.args.get("view", "month"),
                anchor=request.args.get("date") or dt.date.today(),
            )
        )

    # ------------------------------------------------------------------
    # Quotes & invoices
    # ------------------------------------------------------------------
    @app.route("/quotes", methods=["GET", "POST"])
    def quotes() -> Any:
        if request.method == "POST":
            data = _payload()
            quote = system.create_quote(
                client_id=data.get("client_id"),
                lines=data.get("lignes") or [],
                tax_percent=data.get("tva"),
                status=data.get("statut", "brouillon"),
                valid_until=data.get("date_validite"),
                notes=data.get("notes"),
                issue_date=_issue_date(data),
                reprice=bool(data.get("reprice")),
            )
            return jsonify(quote), 201
        return jsonify(
            system.list_quotes(
                client_id=_int_arg("client_id"),
                status=request.args.get("statut"),
                search=request.args.get("q"),
            )
        )

    @app.route("/quotes/<int:quote_id>", methods=["GET", "PATCH", "DELETE"])
    def quote_detail(quote_id: int) -> Any:
        if request.method == "PATCH":
            data = _payload()
            return jsonify(
                system.update_quote(
                    quote_id,
                    client_id=data.get("client_id"),
                    lines=data.get("lignes"),
                    tax_percent=data.get("tva"),
                    status=data.get("statut"),
                    valid_until=data.get("date_validite"),
                    notes=data.get("notes"),
                    reprice=bool(data.get("reprice")),
                )
            )
        if request.method == "DELETE":
            system.delete_quote(quote_id)
            return "", 204
        return jsonify(system.get_quote(quote_id))

    @app.post("/quotes/<int:quote_id>/invoice")
    def quote_to_invoice(quote_id: int) -> Any:
        data = _payload()
        invoice = system.convert_quote_to_invoice(
            quote_id,
            issue_date=_issue_date(data),
            due_date=data.get("date_echeance"),
        )
        return jsonify(invoice), 201

    @app.route("/invoices", methods=["GET", "POST"])
    def invoices() -> Any:
        if request.method == "POST":
            data = _payload()
            invoice = system.create_invoice(
                client_id=data.get("client_id"),
                lines=data.get("lignes") or [],
                tax_percent=data.get("tva"),
                status=data.get("statut", "brouillon"),
                due_date=data.get("date_echeance"),
                notes=data.get("notes"),
                issue_date=_issue_date(data),
                reprice=bool(data.get("reprice")),
            )
            return jsonify(invoice), 201
        return jsonify(
            system.list_invoices(
                client_id=_int_arg("client_id"),
                status=request.args.get("statut"),
                search=request.args.get("q"),
            )
        )

    @app.route("/invoices/<int:invoice_id>", methods=["GET", "PATCH", "DELETE"])
    def invoice_detail(invoice_id: int) -> Any:
        if request.method == "PATCH":
            data = _payload()
            return jsonify(
                system.update_invoice(
                    invoice_id,
                    client_id=data.get("client_id"),
                    lines=data.get("lignes"),
                    tax_percent=data.get("tva"),
                    status=data.get("statut"),
                    due_date=data.get("date_echeance"),
                    notes=data.get("notes"),
                    reprice=bool(data.get("reprice")),
                )
            )
        if request.method == "DELETE":
            system.delete_invoice(invoice_id)
            return "", 204
        return jsonify(system.get_invoice(invoice_id))

    # ------------------------------------------------------------------
    # Live pricing for the document editor
    # ------------------------------------------------------------------
    @app.post("/pricing/line")
    def price_line() -> Any:
        data = _payload()
        line = data.get("ligne")
        if not isinstance(line, dict):
            raise ValidationError("ligne must be an object")
        return jsonify(
            system.price_line(line=line, field=data.get("field", "date"), value=data.get("value"))
        )

    @app.post("/pricing/totals")
    def price_totals() -> Any:
        data = _payload()
        tax = data.get("tva")
        if tax in (None, ""):
            tax = 0
        try:
            tax_percent = float(tax)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid tax percent: {tax!r}") from exc
        return jsonify(system.preview_totals(lines=data.get("lignes") or [], tax_percent=tax_percent))

    # ------------------------------------------------------------------
    # Public contact form
    # ------------------------------------------------------------------
    @app.post("/contact")
    def contact() -> Any:
        data = _payload() or request.form.to_dict()
        client = system.submit_contact_request(
            name=data.get("name", ""),
            email=data.get("email", ""),
            phone=data.get("phone"),
            service=data.get("service"),
            message=data.get("message"),
            remote_addr=request.remote_addr,
        )
        logger.info("Contact form submitted from %s", request.remote_addr)
        return jsonify(success=True, client_id=client["id"]), 201

    return app


__all__ = ["create_app"]
