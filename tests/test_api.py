"""
HTTP API Tests

End-to-end through FastAPI: status codes, error bodies and JSON shapes.
"""

from datetime import date, timedelta
from unittest.mock import patch

from bond_ledger.models import DayStatus


class TestAvailabilityEndpoints:

    def test_check_reports_taken_range(self, client, make_apartment, block):
        apt = make_apartment()
        block(apt.id, date(2025, 3, 2), date(2025, 3, 3))

        taken = client.get(f"/api/availability/{apt.id}/check", params={"start": "2025-03-01", "end": "2025-03-04"})
        free = client.get(f"/api/availability/{apt.id}/check", params={"start": "2025-03-03", "end": "2025-03-06"})

        assert taken.status_code == 200
        assert taken.json()["available"] is False
        assert free.json()["available"] is True

    def test_unknown_apartment_is_404(self, client):
        response = client.get("/api/availability/missing/check", params={"start": "2025-03-01", "end": "2025-03-04"})

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_reversed_range_is_422(self, client, make_apartment):
        apt = make_apartment()

        response = client.get(f"/api/availability/{apt.id}/check", params={"start": "2025-03-04", "end": "2025-03-01"})

        assert response.status_code == 422
        assert response.json()["code"] == "invalid_range"

    def test_bulk_update_then_calendar(self, client, make_apartment):
        apt = make_apartment()

        bulk = client.put(f"/api/availability/{apt.id}/bulk", json={
            "dates": ["2025-02-01", "2025-02-02", "2025-02-03", "2025-02-04", "2025-02-05"],
            "status": "blocked",
            "note": "  deep clean  ",
        })
        calendar = client.get(f"/api/availability/{apt.id}/calendar", params={"start": "2025-01-31", "end": "2025-02-07"})

        assert bulk.status_code == 200
        assert bulk.json() == {"apartment_id": apt.id, "dates_updated": 5, "ranges": 1}
        days = calendar.json()["days"]
        assert [d["status"] for d in days] == ["available"] + ["blocked"] * 5 + ["available"]
        assert days[1]["note"] == "deep clean"
        assert days[1]["source"] == "manual"

    def test_bulk_rejects_unknown_status(self, client, make_apartment):
        apt = make_apartment()

        response = client.put(f"/api/availability/{apt.id}/bulk", json={"dates": ["2025-02-01"], "status": "vacant"})

        assert response.status_code == 422

    def test_next_available(self, client, make_apartment, block):
        apt = make_apartment()
        block(apt.id, date(2025, 3, 10), date(2025, 3, 20), status=DayStatus.BOOKED)

        response = client.get(f"/api/availability/{apt.id}/next-available", params={"from_date": "2025-03-10"})

        assert response.json() == {"apartment_id": apt.id, "date": "2025-03-20"}

    def test_blockouts(self, client, make_apartment, block):
        apt = make_apartment()
        today = date.today()
        block(apt.id, today + timedelta(days=3), today + timedelta(days=6), status=DayStatus.BOOKED, reference="bk")

        response = client.get("/api/availability/blockouts", params={"apartment_id": apt.id})

        assert response.json() == [{
            "apartment_id": apt.id,
            "start": (today + timedelta(days=3)).isoformat(),
            "end": (today + timedelta(days=6)).isoformat(),
            "status": "booked",
            "reference": "bk",
            "source": "manual",
            "note": None,
        }]

    def test_search_prefers_whole_stay(self, client, make_apartment, block):
        free = make_apartment(title="Free")
        busy = make_apartment(title="Busy")
        block(busy.id, date(2025, 1, 3), date(2025, 1, 4))

        data = client.get("/api/availability/search", params={"start": "2025-01-01", "end": "2025-01-10"}).json()

        assert [a["id"] for a in data["apartments"]] == [free.id]
        assert data["split_stay_options"] == []
        assert data["infeasible"] is False
        assert data["detail"] is None

    def test_search_falls_back_to_split_stays(self, client, make_apartment, block):
        x = make_apartment(title="X")
        y = make_apartment(title="Y")
        block(x.id, date(2025, 1, 10), date(2025, 1, 20))
        block(y.id, date(2025, 1, 1), date(2025, 1, 5))

        data = client.get("/api/availability/search", params={"start": "2025-01-01", "end": "2025-01-15"}).json()

        assert data["apartments"] == []
        assert len(data["split_stay_options"]) == 1
        assert data["infeasible"] is False


class TestSplitStayEndpoint:

    def test_returns_ranked_options(self, client, make_apartment, block):
        x = make_apartment(title="X")
        y = make_apartment(title="Y")
        block(x.id, date(2025, 1, 10), date(2025, 1, 20))
        block(y.id, date(2025, 1, 1), date(2025, 1, 5))

        response = client.get("/api/split-stays", params={"start": "2025-01-01", "end": "2025-01-15"})

        assert response.status_code == 200
        data = response.json()
        assert data["infeasible"] is False
        option = data["options"][0]
        assert [(s["apartment_id"], s["check_in"], s["check_out"]) for s in option["segments"]] == [
            (x.id, "2025-01-01", "2025-01-05"),
            (y.id, "2025-01-05", "2025-01-15"),
        ]
        assert option["total_price"] == "700.00"
        assert option["is_split_stay"] is True

    def test_no_cover_is_infeasible_not_an_error(self, client, make_apartment, block):
        x = make_apartment(title="X")
        block(x.id, date(2025, 1, 5), date(2025, 1, 6))

        response = client.get("/api/split-stays", params={"start": "2025-01-01", "end": "2025-01-15"})

        assert response.status_code == 200
        assert response.json()["options"] == []
        assert response.json()["infeasible"] is True
        assert response.json()["detail"]["code"] == "infeasible"

    def test_max_segments_below_two_rejected(self, client):
        response = client.get("/api/split-stays", params={"start": "2025-01-01", "end": "2025-01-15", "max_segments": 1})

        assert response.status_code == 422


class TestBookingEndpoints:

    def _create(self, client, apartment_ids, start=date(2025, 3, 1), nights=3):
        segments = []
        check_in = start
        for apartment_id in apartment_ids:
            check_out = check_in + timedelta(days=nights)
            segments.append({
                "apartment_id": apartment_id,
                "check_in_date": check_in.isoformat(),
                "check_out_date": check_out.isoformat(),
            })
            check_in = check_out
        return client.post("/api/bookings", json={"segments": segments, "guest_name": "Ana Sousa"})

    def test_request_confirm_cancel_flow(self, client, make_apartment):
        a = make_apartment(title="A")
        b = make_apartment(title="B")

        created = self._create(client, [a.id, b.id])
        assert created.status_code == 201
        booking = created.json()
        assert booking["status"] == "requested"
        assert booking["is_split_stay"] is True
        assert booking["total_amount"] == "300.00"

        confirmed = client.post(f"/api/bookings/{booking['id']}/confirm")
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "confirmed"

        check = client.get(f"/api/availability/{a.id}/check", params={"start": "2025-03-01", "end": "2025-03-04"})
        assert check.json()["available"] is False

        fetched = client.get(f"/api/bookings/{booking['id']}")
        assert [s["nights"] for s in fetched.json()["segments"]] == [3, 3]

        cancelled = client.post(f"/api/bookings/{booking['id']}/cancel")
        assert cancelled.json()["status"] == "cancelled"
        check = client.get(f"/api/availability/{a.id}/check", params={"start": "2025-03-01", "end": "2025-03-04"})
        assert check.json()["available"] is True

    def test_confirm_after_dates_taken_is_409(self, client, make_apartment, block):
        a = make_apartment()
        booking = self._create(client, [a.id]).json()
        block(a.id, date(2025, 3, 2), date(2025, 3, 3), status=DayStatus.BOOKED, reference="walk-in")

        response = client.post(f"/api/bookings/{booking['id']}/confirm")

        assert response.status_code == 409
        assert response.json()["code"] == "conflict"
        assert response.json()["reason"] == "unavailable"

    def test_cancel_twice_is_409(self, client, make_apartment):
        a = make_apartment()
        booking = self._create(client, [a.id]).json()
        client.post(f"/api/bookings/{booking['id']}/cancel")

        response = client.post(f"/api/bookings/{booking['id']}/cancel")

        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"

    def test_modify_segments(self, client, make_apartment):
        a = make_apartment()
        booking = self._create(client, [a.id]).json()
        client.post(f"/api/bookings/{booking['id']}/confirm")

        response = client.put(f"/api/bookings/{booking['id']}/segments", json={"segments": [{
            "apartment_id": a.id, "check_in_date": "2025-03-02", "check_out_date": "2025-03-06",
        }]})

        assert response.status_code == 200
        assert response.json()["check_out_date"] == "2025-03-06"

    def test_reversed_segment_dates_rejected(self, client, make_apartment):
        a = make_apartment()

        response = client.post("/api/bookings", json={"guest_name": "G", "segments": [{
            "apartment_id": a.id, "check_in_date": "2025-03-05", "check_out_date": "2025-03-01",
        }]})

        assert response.status_code == 422

    def test_unknown_booking_is_404(self, client):
        assert client.get("/api/bookings/missing").status_code == 404


class TestIcalEndpoints:

    def test_feed_lifecycle(self, client, make_apartment):
        apt = make_apartment()
        today = date.today()
        start, end = today + timedelta(days=5), today + timedelta(days=8)
        body = (
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//Test//EN\r\n"
            "BEGIN:VEVENT\r\nUID:remote-1\r\n"
            f"DTSTART;VALUE=DATE:{start:%Y%m%d}\r\nDTEND;VALUE=DATE:{end:%Y%m%d}\r\n"
            "END:VEVENT\r\nEND:VCALENDAR\r\n"
        )

        created = client.post("/api/ical/feeds", json={
            "apartment_id": apt.id, "feed_name": "Airbnb", "remote_url": "webcal://example.com/a.ics",
        })
        assert created.status_code == 201
        feed = created.json()
        assert feed["remote_url"] == "https://example.com/a.ics"
        assert feed["sync_status"] == "idle"

        with patch("bond_ledger.services.ical_sync.fetch_feed", return_value=body):
            synced = client.post(f"/api/ical/feeds/{feed['id']}/sync")
        assert synced.json()["success"] is True
        assert synced.json()["datesUpdated"] == 3

        listed = client.get("/api/ical/feeds", params={"apartment_id": apt.id})
        assert listed.json()[0]["last_dates_updated"] == 3

        updated = client.patch(f"/api/ical/feeds/{feed['id']}", json={"is_active": False})
        assert updated.json()["is_active"] is False

        deleted = client.delete(f"/api/ical/feeds/{feed['id']}")
        assert deleted.json() == {"deleted": True, "dates_removed": 3}

    def test_sync_failure_reported_in_body(self, client, make_apartment):
        apt = make_apartment()
        feed = client.post("/api/ical/feeds", json={
            "apartment_id": apt.id, "feed_name": "VRBO", "remote_url": "https://example.com/v.ics",
        }).json()

        with patch("bond_ledger.services.ical_sync.fetch_feed", return_value="not a calendar"):
            response = client.post(f"/api/ical/apartments/{apt.id}/sync")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["results"][0]["feedId"] == feed["id"]
        assert data["results"][0]["success"] is False

    def test_feed_url_must_be_http(self, client, make_apartment):
        apt = make_apartment()

        response = client.post("/api/ical/feeds", json={
            "apartment_id": apt.id, "feed_name": "Bad", "remote_url": "ftp://example.com/a.ics",
        })

        assert response.status_code == 422

    def test_export_link_served_by_token(self, client, make_apartment, block):
        apt = make_apartment(title="Sea View")
        today = date.today()
        block(apt.id, today + timedelta(days=1), today + timedelta(days=3), status=DayStatus.BOOKED)

        link = client.get(f"/api/ical/apartments/{apt.id}/export-link").json()
        response = client.get(f"/api/ical/export/{link['export_token']}.ics")

        assert link["is_active"] is True
        assert link["url"].endswith(f"/api/ical/export/{link['export_token']}.ics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/calendar")
        assert response.headers["content-disposition"] == 'attachment; filename="bond-calendar.ics"'
        assert response.headers["cache-control"] == "private, max-age=3600"
        assert "BEGIN:VEVENT" in response.text
        assert "SUMMARY:Booked" in response.text
        assert client.get("/api/ical/export", params={"token": link["export_token"]}).status_code == 200

    def test_export_link_is_stable_until_regenerated(self, client, make_apartment):
        apt = make_apartment()

        first = client.get(f"/api/ical/apartments/{apt.id}/export-link").json()
        again = client.get(f"/api/ical/apartments/{apt.id}/export-link").json()
        regenerated = client.post(f"/api/ical/apartments/{apt.id}/export-link/regenerate").json()

        assert again["export_token"] == first["export_token"]
        assert regenerated["export_token"] != first["export_token"]
        assert client.get(f"/api/ical/export/{first['export_token']}.ics").status_code == 404
        assert client.get(f"/api/ical/export/{regenerated['export_token']}.ics").status_code == 200

    def test_deactivated_link_stops_serving(self, client, make_apartment):
        apt = make_apartment()
        token = client.get(f"/api/ical/apartments/{apt.id}/export-link").json()["export_token"]

        response = client.delete(f"/api/ical/apartments/{apt.id}/export-link")

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert client.get("/api/ical/export", params={"token": token}).status_code == 404

    def test_export_requires_known_token(self, client, make_apartment):
        apt = make_apartment()

        assert client.get("/api/ical/export/not-a-token.ics").status_code == 404
        assert client.get(f"/api/ical/export/{apt.id}.ics").status_code == 404
        assert client.get("/api/ical/export").status_code == 422

    def test_export_link_for_unknown_apartment(self, client):
        assert client.get("/api/ical/apartments/missing/export-link").status_code == 404
        assert client.delete("/api/ical/apartments/missing/export-link").status_code == 404


class TestOperationalEndpoints:

    def test_liveness(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_readiness(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["database"]["type"] == "sqlite"

    def test_metrics_exposed(self, client):
        client.get("/health")

        response = client.get("/metrics")

        assert "# TYPE ledger_writes_total counter" in response.text
        assert 'http_requests_total{method="GET",path="/health"' in response.text

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc123"})

        assert response.headers["X-Request-ID"] == "abc123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
