import datetime as dt
import unittest

from nannysitting.agency.errors import ValidationError
from nannysitting.agency.pricing import (
    LineItem,
    Tariff,
    billed_hours,
    compute_payout,
    format_amount,
    hours_between,
    mission_amount,
    next_line,
    normalize_time,
    recompute_line,
    recompute_totals,
    resolve_tariff,
    update_line,
)

SATURDAY = dt.date(2024, 6, 8)
MONDAY = dt.date(2024, 6, 10)


class TariffResolutionTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.weekday = Tariff(name="Semaine", hourly_rate=10, day_type="weekday")
        self.weekend = Tariff(name="Weekend", hourly_rate=15, day_type="weekend")
        self.any_day = Tariff(name="Standard", hourly_rate=8, day_type="any")

    def test_specific_day_type_beats_any(self) -> None:
        tariff = resolve_tariff(SATURDAY, [self.weekday, self.any_day, self.weekend])
        self.assertIs(tariff, self.weekend)
        self.assertEqual(tariff.hourly_rate, 15)

    def test_falls_back_to_any(self) -> None:
        tariff = resolve_tariff(MONDAY, [self.weekend, self.any_day])
        self.assertIs(tariff, self.any_day)

    def test_empty_catalog_has_no_match(self) -> None:
        self.assertIsNone(resolve_tariff(MONDAY, []))
        self.assertIsNone(resolve_tariff(SATURDAY, []))

    def test_first_matching_tariff_wins(self) -> None:
        second = Tariff(name="Weekend bis", hourly_rate=20, day_type="weekend")
        self.assertIs(resolve_tariff(SATURDAY, [self.weekend, second]), self.weekend)

    def test_accepts_iso_strings(self) -> None:
        self.assertIs(resolve_tariff("2024-06-09", [self.weekday, self.weekend]), self.weekend)

    def test_invalid_tariffs_are_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            Tariff(name="Férié", hourly_rate=10, day_type="holiday")
        with self.assertRaises(ValidationError):
            Tariff(name="Négatif", hourly_rate=-1)

    def test_row_round_trip_uses_stored_day_types(self) -> None:
        tariff = Tariff.from_row({"id": 3, "nom": "Weekend", "tarif_horaire": 15, "type_jour": "weekend", "actif": 1})
        self.assertEqual(tariff.day_type, "weekend")
        self.assertEqual(Tariff.from_row({"nom": "Tous", "tarif_horaire": 9, "type_jour": "tous"}).day_type, "any")
        self.assertEqual(self.weekday.to_dict()["type_jour"], "semaine")


class LineItemTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.catalog = [
            Tariff(name="Garde en semaine", hourly_rate=12.5, day_type="weekday"),
            Tariff(name="Garde le weekend", hourly_rate=15, day_type="weekend"),
        ]

    def test_total_follows_rate_edit(self) -> None:
        line = LineItem(date=MONDAY, start_time="09:00", end_time="17:00")
        update_line(line, "hourly_rate", "12.50")
        self.assertEqual(line.total, 100.0)

    def test_total_follows_time_edits(self) -> None:
        line = LineItem.from_dict(
            {"date": "2024-06-10", "heure_debut": "09:00", "heure_fin": "17:00", "prix_horaire": 10}
        )
        update_line(line, "end_time", "12:30")
        self.assertAlmostEqual(line.total, 35.0)
        update_line(line, "start_time", "10:30:00")
        self.assertEqual(line.start_time, "10:30")
        self.assertAlmostEqual(line.total, 20.0)

    def test_date_edit_applies_tariff(self) -> None:
        line = LineItem(date=MONDAY, description="Custom", hourly_rate=30)
        update_line(line, "date", "2024-06-08", self.catalog)
        self.assertEqual(line.description, "Garde le weekend")
        self.assertEqual(line.hourly_rate, 15)
        self.assertEqual(line.total, 8 * 15)

    def test_date_edit_without_match_keeps_line(self) -> None:
        line = LineItem(date=MONDAY, description="Custom", hourly_rate=30)
        update_line(line, "date", SATURDAY, [])
        self.assertEqual(line.description, "Custom")
        self.assertEqual(line.hourly_rate, 30)
        self.assertEqual(line.total, 8 * 30)

    def test_description_edit_does_not_reprice(self) -> None:
        line = LineItem(date=MONDAY, hourly_rate=10, total=80)
        update_line(line, "description", "Sortie d'école", self.catalog)
        self.assertEqual(line.hourly_rate, 10)
        self.assertEqual(line.description, "Sortie d'école")

    def test_unknown_field_is_rejected(self) -> None:
        line = LineItem(date=MONDAY)
        with self.assertRaises(ValidationError):
            update_line(line, "total", 10)
        with self.assertRaises(ValidationError):
            recompute_line(line, "colour")

    def test_malformed_time_is_fail_soft(self) -> None:
        self.assertEqual(hours_between("bad", "09:00"), 0)
        line = LineItem.from_dict(
            {"date": "2024-06-10", "heure_debut": "bad", "heure_fin": "09:00", "prix_horaire": 10}
        )
        self.assertEqual(line.total, 0)

    def test_time_with_trailing_text_is_not_truncated(self) -> None:
        self.assertEqual(normalize_time("09:00 PM"), "09:00 PM")
        self.assertEqual(normalize_time("10:30:00"), "10:30")
        self.assertEqual(normalize_time(dt.time(7, 5)), "07:05")
        self.assertEqual(hours_between("09:00 PM", "17:00"), 0)
        self.assertEqual(hours_between("09:00:00", "17:00"), 8)

    def test_missing_time_is_blank(self) -> None:
        self.assertEqual(normalize_time(None), "")
        line = LineItem.from_dict(
            {"date": "2024-06-10", "heure_debut": None, "heure_fin": "17:00", "prix_horaire": 10}
        )
        self.assertEqual(line.start_time, "")
        self.assertEqual(line.total, 0)

    def test_negative_duration_propagates(self) -> None:
        line = LineItem(date=MONDAY, start_time="17:00", end_time="09:00")
        update_line(line, "hourly_rate", 10)
        self.assertEqual(line.total, -80)

    def test_next_line_continues_previous(self) -> None:
        previous = LineItem.from_dict(
            {"date": "2024-06-10", "heure_debut": "08:00", "heure_fin": "12:00", "description": "Matin", "prix_horaire": 12}
        )
        line = next_line(previous)
        self.assertEqual(line.date, previous.date)
        self.assertEqual(line.description, "")
        self.assertEqual(line.total, 48)

    def test_missing_date_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            LineItem.from_dict({"heure_debut": "09:00"})
        with self.assertRaises(ValidationError):
            LineItem.from_dict({"date": "10/06/2024"})


class TotalsAndPayoutTestCase(unittest.TestCase):
    def test_document_totals(self) -> None:
        lines = [LineItem(date=MONDAY, total=100.0), LineItem(date=MONDAY, total=50.0)]
        totals = recompute_totals(lines, 21)
        self.assertAlmostEqual(totals.subtotal, 150.0)
        self.assertAlmostEqual(totals.tax_amount, 31.5)
        self.assertAlmostEqual(totals.total, 181.5)
        self.assertEqual(format_amount(totals.total), "181.50")

    def test_recomputing_is_idempotent(self) -> None:
        lines = [LineItem(date=MONDAY, total=33.33), LineItem(date=MONDAY, total=66.67)]
        self.assertEqual(recompute_totals(lines, 21), recompute_totals(lines, 21))

    def test_empty_document_totals(self) -> None:
        totals = recompute_totals([], 21)
        self.assertEqual((totals.subtotal, totals.tax_amount, totals.total), (0, 0, 0))

    def test_payout_rounds_up_to_half_hour(self) -> None:
        self.assertEqual(billed_hours("09:00", "09:40"), 1.0)
        self.assertEqual(compute_payout("09:00", "09:40", 15), 15.0)
        self.assertEqual(billed_hours("09:00", "10:10"), 1.5)

    def test_zero_duration_or_rate_pays_nothing(self) -> None:
        self.assertEqual(compute_payout("09:00", "09:00", 15), 0)
        self.assertEqual(compute_payout("09:00", "12:00", None), 0)

    def test_mission_amount(self) -> None:
        catalog = [Tariff(name="Weekend", hourly_rate=15, day_type="weekend")]
        self.assertEqual(mission_amount(SATURDAY, "09:00", "11:00", catalog), 30)
        self.assertIsNone(mission_amount(MONDAY, "09:00", "11:00", catalog))
        self.assertIsNone(mission_amount(SATURDAY, "11:00", "09:00", catalog))


if __name__ == "__main__":
    unittest.main()
