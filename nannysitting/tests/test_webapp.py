import unittest

from nannysitting.agency.ratelimit import MemoryStore
from nannysitting.webapp import create_app


class WebAppTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.app = create_app(
            ":memory:",
            config={"TESTING": True, "CONTACT_RATE_LIMIT": 2, "CONTACT_RATE_WINDOW": 600},
            rate_limit_store=MemoryStore(),
        )
        self.client = self.app.test_client()
        self.client.post("/tariffs", json={"nom": "Semaine", "tarif_horaire": 12.5, "type_jour": "semaine"})
        self.client.post("/tariffs", json={"nom": "Weekend", "tarif_horaire": 15, "type_jour": "weekend"})
        response = self.client.post(
            "/clients", json={"prenom": "Marie", "nom": "Dupont", "email": "marie@example.com", "statut": "client"}
        )
        self.client_id = response.get_json()["id"]

    def tearDown(self) -> None:
        self.app.extensions["agency"].close()

    def test_tariff_catalog(self) -> None:
        response = self.client.get("/tariffs")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([t["type_jour"] for t in response.get_json()], ["semaine", "weekend"])
        response = self.client.post("/tariffs", json={"nom": "Férié", "tarif_horaire": 20, "type_jour": "ferie"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("error", response.get_json())

    def test_missing_required_fields_are_400(self) -> None:
        for path, payload in (
            ("/tariffs", {"type_jour": "semaine"}),
            ("/tariffs", {"tarif_horaire": 12}),
            ("/clients", {"email": "anon@example.com"}),
            ("/nannysitters", {"prenom": "Julie"}),
            ("/nannysitters", {}),
        ):
            response = self.client.post(path, json=payload)
            self.assertEqual(response.status_code, 400, path)
            self.assertIn("Missing required fields", response.get_json()["error"])
        response = self.client.post("/clients", json={"prenom": "Paul"})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["nom"], "")

    def test_unknown_records_are_404(self) -> None:
        response = self.client.get("/clients/999")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"], "Client not found")

    def test_line_pricing(self) -> None:
        response = self.client.post(
            "/pricing/line",
            json={
                "ligne": {"date": "2024-06-10", "heure_debut": "09:00", "heure_fin": "17:00"},
                "field": "date",
                "value": "2024-06-08",
            },
        )
        self.assertEqual(response.status_code, 200)
        line = response.get_json()
        self.assertEqual(line["description"], "Weekend")
        self.assertEqual(line["total"], 120)

    def test_totals_preview(self) -> None:
        response = self.client.post(
            "/pricing/totals",
            json={
                "lignes": [
                    {"date": "2024-06-10", "heure_debut": "09:00", "heure_fin": "17:00", "prix_horaire": 12.5},
                    {"date": "2024-06-10", "heure_debut": "13:00", "heure_fin": "17:00", "prix_horaire": 12.5},
                ],
                "tva": 21,
            },
        )
        totals = response.get_json()
        self.assertAlmostEqual(totals["montant_ht"], 150.0)
        self.assertAlmostEqual(totals["montant_tva"], 31.5)
        self.assertAlmostEqual(totals["montant_ttc"], 181.5)

    def test_quote_to_invoice_flow(self) -> None:
        response = self.client.post(
            "/quotes",
            json={
                "client_id": self.client_id,
                "date_emission": "2024-06-03",
                "lignes": [{"date": "2024-06-08", "heure_debut": "10:00", "heure_fin": "12:00"}],
                "reprice": True,
            },
        )
        self.assertEqual(response.status_code, 201)
        quote = response.get_json()
        self.assertEqual(quote["numero"], "DEV-2024-0001")
        self.assertAlmostEqual(quote["montant_ttc"], 36.3)

        response = self.client.post(f"/quotes/{quote['id']}/invoice", json={})
        self.assertEqual(response.status_code, 400)

        self.client.patch(f"/quotes/{quote['id']}", json={"statut": "accepte"})
        response = self.client.patch(f"/quotes/{quote['id']}", json={"notes": "trop tard"})
        self.assertEqual(response.status_code, 400)

        response = self.client.post(f"/quotes/{quote['id']}/invoice", json={"date_emission": "2024-06-20"})
        self.assertEqual(response.status_code, 201)
        invoice = response.get_json()
        self.assertEqual(invoice["numero"], "FAC-2024-0001")
        self.assertEqual(invoice["date_echeance"], "2024-07-20")
        self.assertEqual(len(self.client.get("/invoices").get_json()), 1)

    def test_missions_and_calendar(self) -> None:
        response = self.client.post(
            "/missions",
            json={"client_id": self.client_id, "dates": ["2024-06-10"], "heure_debut": "09:00", "heure_fin": "11:00"},
        )
        self.assertEqual(response.status_code, 201)
        self.client.post(
            "/missions",
            json={"client_id": self.client_id, "date": "2024-06-10", "heure_debut": "10:00", "heure_fin": "12:00"},
        )
        response = self.client.get("/calendar?view=week&date=2024-06-12")
        view = response.get_json()
        self.assertEqual(view["start"], "2024-06-10")
        self.assertEqual([m["use_alt_color"] for m in view["missions"]], [False, True])
        response = self.client.get("/missions?start=2024-06-10&end=2024-06-10")
        self.assertEqual(len(response.get_json()), 2)
        response = self.client.post("/missions", json={"dates": ["2024-06-10"]})
        self.assertEqual(response.status_code, 400)

    def test_sitter_payouts(self) -> None:
        sitter = self.client.post(
            "/nannysitters", json={"prenom": "Julie", "nom": "Martin", "tarif_horaire": 15}
        ).get_json()
        self.client.post(
            "/missions",
            json={
                "client_id": self.client_id,
                "dates": ["2024-06-10"],
                "heure_debut": "09:00",
                "heure_fin": "09:40",
                "nannysitter_id": sitter["id"],
            },
        )
        response = self.client.get(f"/nannysitters/{sitter['id']}/payouts?start=2024-06-01&end=2024-06-30")
        report = response.get_json()
        self.assertEqual(report["total_payout"], 15.0)

    def test_contact_form_is_rate_limited(self) -> None:
        payload = {"name": "Sophie Lambert", "email": "sophie@example.com", "service": "Garde ponctuelle"}
        for _ in range(2):
            response = self.client.post("/contact", json=payload)
            self.assertEqual(response.status_code, 201)
        response = self.client.post("/contact", json=payload)
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.headers["Retry-After"], "600")
        prospects = self.client.get("/clients?statut=prospect").get_json()
        self.assertEqual(len(prospects), 2)

    def test_dashboard(self) -> None:
        response = self.client.get("/dashboard")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["clients"], 1)


if __name__ == "__main__":
    unittest.main()
