import datetime as dt
import unittest

from nannysitting.agency.errors import ValidationError
from nannysitting.agency.schedule import Mission, assign_color_bands, group_by_day, period_bounds

DAY = dt.date(2024, 6, 10)


def mission(start: str, end: str, day: dt.date = DAY) -> Mission:
    return Mission(date=day, start_time=start, end_time=end)


class ColorBandTestCase(unittest.TestCase):
    def test_overlapping_missions_alternate(self) -> None:
        banded = assign_color_bands(
            [mission("09:00", "11:00"), mission("10:00", "12:00"), mission("12:00", "13:00")]
        )
        self.assertEqual([m.color_flag for m in banded], [False, True, False])

    def test_chain_of_overlaps_keeps_alternating(self) -> None:
        banded = assign_color_bands(
            [mission("09:00", "12:00"), mission("10:00", "13:00"), mission("11:00", "14:00")]
        )
        self.assertEqual([m.color_flag for m in banded], [False, True, False])

    def test_different_days_never_overlap(self) -> None:
        banded = assign_color_bands(
            [mission("09:00", "23:00"), mission("08:00", "10:00", DAY + dt.timedelta(days=1))]
        )
        self.assertEqual([m.color_flag for m in banded], [False, False])

    def test_input_is_not_mutated(self) -> None:
        missions = [mission("09:00", "11:00"), mission("10:00", "12:00")]
        assign_color_bands(missions)
        self.assertFalse(missions[1].color_flag)
        self.assertEqual(assign_color_bands([]), [])


class MissionTestCase(unittest.TestCase):
    def test_from_row_and_payout(self) -> None:
        row = {
            "id": 1,
            "client_id": 2,
            "nannysitter_id": 3,
            "date": "2024-06-10",
            "heure_debut": "09:00:00",
            "heure_fin": "09:40:00",
            "statut": "termine",
            "montant": 8.33,
            "tarif_horaire": 15,
            "client_name": "Marie Dupont",
            "sitter_name": "Julie Martin",
        }
        item = Mission.from_row(row)
        self.assertEqual(item.start_time, "09:00")
        self.assertEqual(item.billed_hours, 1.0)
        self.assertEqual(item.payout, 15.0)
        self.assertEqual(item.to_dict()["use_alt_color"], False)

    def test_unknown_status_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            Mission.from_row({"date": "2024-06-10", "heure_debut": "09:00", "heure_fin": "10:00", "statut": "perdu"})


class PeriodTestCase(unittest.TestCase):
    def test_bounds(self) -> None:
        self.assertEqual(period_bounds("day", DAY), (DAY, DAY))
        self.assertEqual(period_bounds("week", "2024-06-12"), (dt.date(2024, 6, 10), dt.date(2024, 6, 16)))
        self.assertEqual(period_bounds("month", "2024-02-14"), (dt.date(2024, 2, 1), dt.date(2024, 2, 29)))
        with self.assertRaises(ValidationError):
            period_bounds("year", DAY)

    def test_group_by_day(self) -> None:
        grouped = group_by_day([mission("09:00", "10:00"), mission("11:00", "12:00"), mission("09:00", "10:00", DAY + dt.timedelta(days=2))])
        self.assertEqual(sorted(grouped), ["2024-06-10", "2024-06-12"])
        self.assertEqual(len(grouped["2024-06-10"]), 2)


if __name__ == "__main__":
    unittest.main()
