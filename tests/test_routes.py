"""HTTP tests through the Flask test client."""

import pytest

from conftest import STUDIO_RULES, admin_headers, headers, make_resource
from models.audit_log import AuditLog

NOON = {"start_time": "2030-01-08T17:00:00Z", "end_time": "2030-01-08T17:30:00Z"}
ONE_PM = {"start_time": "2030-01-08T18:00:00Z", "end_time": "2030-01-08T18:30:00Z"}


def create_hold(client, resource, who="ana@example.org", **body):
    payload = dict(NOON, resource_id=resource.id)
    payload.update(body)
    return client.post("/bookings", json=payload, headers=headers(who, email=who))


def open_starts(client, resource, day="2030-01-08"):
    resp = client.get(f"/resources/{resource.id}/availability?start_date={day}")
    assert resp.status_code == 200
    return [s["start"] for s in resp.get_json()["slots"]]


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok"}
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


class TestResources:
    def test_admin_creates_resource_with_normalized_rules(self, client):
        resp = client.post("/resources", json={
            "title": "Remote Studio Visit",
            "kind": "person",
            "availability_rules": STUDIO_RULES,
        }, headers=admin_headers())
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["organization_id"] == "org-1"
        assert body["availability_rules"]["exclusive_hosts"] is True
        assert body["availability_rules"]["windows"][0]["host"] == "mo@example.org"

    def test_anonymous_and_non_admin_are_refused(self, client):
        assert client.post("/resources", json={"title": "X"}).status_code == 401
        assert client.post("/resources", json={"title": "X"}, headers=headers()).status_code == 403

    def test_invalid_rules_are_reported(self, client):
        resp = client.post("/resources", json={
            "title": "Kiln",
            "availability_rules": {"slot_minutes": 0, "timezone": "Nowhere/Else"},
        }, headers=admin_headers())
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["code"] == "ValidationError"
        assert len(body["details"]) == 2

    def test_admin_of_other_org_cannot_edit(self, client, studio):
        other = headers("admin@elsewhere.org", roles=("ADMIN",), orgs=("org-2",))
        assert client.patch(f"/resources/{studio.id}", json={"title": "Mine"}, headers=other).status_code == 403

    def test_update_and_deactivate(self, client, studio):
        resp = client.patch(f"/resources/{studio.id}", json={"capacity": 2, "location": "Studio B"},
                            headers=admin_headers())
        assert resp.status_code == 200
        assert resp.get_json()["capacity"] == 2

        assert client.post(f"/resources/{studio.id}/deactivate", headers=admin_headers()).status_code == 200
        assert client.get(f"/resources/{studio.id}").status_code == 404
        assert client.get("/resources", headers=headers()).get_json() == []

    def test_list_is_scoped_to_caller_orgs(self, client, session, studio):
        make_resource(session, organization_id="org-2", title="Darkroom")
        titles = [r["title"] for r in client.get("/resources", headers=headers()).get_json()]
        assert titles == ["Remote Studio Visit"]


class TestAvailability:
    def test_tuesday_slots(self, client, studio):
        resp = client.get(f"/resources/{studio.id}/availability?start_date=2030-01-08&end_date=2030-01-08")
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["timezone"] == "America/New_York"
        assert body["duration_minutes"] == 30
        assert len(body["slots"]) == 8
        assert body["slots"][0] == {
            "start": "2030-01-08T17:00:00+00:00",
            "end": "2030-01-08T17:30:00+00:00",
            "host": "mo@example.org",
            "remaining_capacity": 1,
        }

    @pytest.mark.parametrize("query", [
        "start_date=tuesday",
        "start_date=2030-01-08&end_date=2030-12-31",
        "start_date=2030-01-08&duration_minutes=45",
        "start_date=2030-01-09&end_date=2030-01-08",
    ])
    def test_bad_queries(self, client, studio, query):
        assert client.get(f"/resources/{studio.id}/availability?{query}").status_code == 400

    def test_unknown_resource(self, client):
        assert client.get("/resources/999/availability?start_date=2030-01-08").status_code == 404


class TestBookingLifecycle:
    def test_hold_removes_slot(self, client, studio):
        resp = create_hold(client, studio)
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["status"] == "held"
        assert body["requires_payment"] is False
        assert set(body["tokens"]) == {"cancel"}
        assert "2030-01-08T17:00:00+00:00" not in open_starts(client, studio)
        assert len(open_starts(client, studio)) == 7

    def test_conflicting_hold_is_409(self, client, studio):
        create_hold(client, studio)
        resp = create_hold(client, studio, who="ben@example.org")
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "SlotUnavailable"

    @pytest.mark.parametrize("body,status", [
        ({"start_time": "2030-01-08T12:00:00", "end_time": "2030-01-08T12:30:00"}, 400),
        ({"start_time": "2030-01-08T17:30:00Z", "end_time": "2030-01-08T17:00:00Z"}, 400),
        ({"start_time": "2030-01-08T17:10:00Z", "end_time": "2030-01-08T17:40:00Z"}, 409),
        ({"capacity": 5}, 400),
    ])
    def test_rejected_holds(self, client, studio, body, status):
        assert create_hold(client, studio, **body).status_code == status

    def test_hold_needs_identity_and_resource(self, client, studio):
        assert client.post("/bookings", json=dict(NOON, resource_id=studio.id)).status_code == 401
        assert client.post("/bookings", json=NOON, headers=headers()).status_code == 400
        assert client.post("/bookings", json=dict(NOON, resource_id=999), headers=headers()).status_code == 404

    def test_auto_approved_resource_confirms_immediately(self, client, session):
        resource = make_resource(session, auto_approve=True)
        body = create_hold(client, resource).get_json()
        assert body["status"] == "confirmed"
        assert set(body["tokens"]) == {"reschedule", "cancel"}

    def test_admin_confirms_hold(self, client, studio):
        booking = create_hold(client, studio).get_json()
        assert client.post(f"/bookings/{booking['id']}/confirm", headers=headers()).status_code == 403

        resp = client.post(f"/bookings/{booking['id']}/confirm", headers=admin_headers())
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "confirmed"
        assert set(resp.get_json()["tokens"]) == {"reschedule", "cancel"}

        again = client.post(f"/bookings/{booking['id']}/confirm", headers=admin_headers())
        assert again.status_code == 200
        assert "tokens" not in again.get_json()

    def test_reschedule_with_token(self, client, studio):
        booking = create_hold(client, studio).get_json()
        confirmed = client.post(f"/bookings/{booking['id']}/confirm", headers=admin_headers()).get_json()

        resp = client.post(f"/bookings/{booking['id']}/reschedule",
                           json=dict(ONE_PM, token=confirmed["tokens"]["reschedule"]))
        assert resp.status_code == 200
        assert resp.get_json()["start_time"] == "2030-01-08T18:00:00+00:00"
        starts = open_starts(client, studio)
        assert "2030-01-08T17:00:00+00:00" in starts
        assert "2030-01-08T18:00:00+00:00" not in starts

        reused = client.post(f"/bookings/{booking['id']}/reschedule",
                             json=dict(NOON, token=confirmed["tokens"]["reschedule"]))
        assert reused.status_code == 403
        assert reused.get_json()["code"] == "InvalidToken"

    def test_cancel_with_token(self, client, studio):
        booking = create_hold(client, studio).get_json()
        resp = client.post(f"/bookings/{booking['id']}/cancel?token={booking['tokens']['cancel']}",
                           json={"reason": "changed plans"})
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "cancelled"
        assert resp.get_json()["cancel_reason"] == "changed plans"
        assert len(open_starts(client, studio)) == 8

    def test_owner_may_drop_own_hold_but_not_confirmed_booking(self, client, studio):
        held = create_hold(client, studio).get_json()
        assert client.post(f"/bookings/{held['id']}/cancel", headers=headers()).status_code == 200

        other = create_hold(client, studio).get_json()
        client.post(f"/bookings/{other['id']}/confirm", headers=admin_headers())
        assert client.post(f"/bookings/{other['id']}/cancel", headers=headers()).status_code == 403

    def test_admin_cancel_is_idempotent(self, client, studio):
        booking = create_hold(client, studio).get_json()
        first = client.post(f"/bookings/{booking['id']}/cancel", headers=admin_headers())
        second = client.post(f"/bookings/{booking['id']}/cancel", headers=admin_headers())
        assert (first.status_code, second.status_code) == (200, 200)
        assert second.get_json()["status"] == "cancelled"

    def test_emailed_link_after_admin_cancel(self, client, studio):
        booking = create_hold(client, studio).get_json()
        client.post(f"/bookings/{booking['id']}/cancel", headers=admin_headers())
        resp = client.post(f"/bookings/{booking['id']}/cancel?token={booking['tokens']['cancel']}")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "cancelled"

    def test_cannot_reschedule_cancelled_booking(self, client, studio):
        booking = create_hold(client, studio).get_json()
        client.post(f"/bookings/{booking['id']}/cancel", headers=admin_headers())
        resp = client.post(f"/bookings/{booking['id']}/reschedule", json=ONE_PM, headers=admin_headers())
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "InvalidTransition"

    def test_reissued_links(self, client, studio):
        booking = create_hold(client, studio).get_json()
        resp = client.post(f"/bookings/{booking['id']}/tokens", headers=admin_headers())
        assert resp.status_code == 201
        assert set(resp.get_json()["tokens"]) == {"cancel"}
        stale = client.post(f"/bookings/{booking['id']}/cancel", json={"token": booking["tokens"]["cancel"]})
        assert stale.status_code == 403


class TestBookingReads:
    def test_visibility(self, client, studio):
        booking = create_hold(client, studio).get_json()
        url = f"/bookings/{booking['id']}"
        assert client.get(url, headers=headers()).status_code == 200
        assert client.get(url, headers=headers("ben@example.org")).status_code == 404
        assert client.get(url, headers=admin_headers()).status_code == 200
        assert client.get(url).status_code == 401

    def test_my_bookings_and_admin_list(self, client, studio):
        create_hold(client, studio)
        create_hold(client, studio, who="ben@example.org", **ONE_PM)

        mine = client.get("/bookings/me", headers=headers()).get_json()
        assert [b["requester"] for b in mine] == ["ana@example.org"]

        assert client.get("/bookings", headers=headers()).status_code == 403
        everything = client.get("/bookings", headers=admin_headers()).get_json()
        assert len(everything) == 2

    def test_calendar_download(self, client, studio):
        booking = create_hold(client, studio).get_json()
        resp = client.get(f"/bookings/{booking['id']}/calendar.ics", headers=headers())
        assert resp.status_code == 200
        assert resp.mimetype == "text/calendar"
        assert "remote-studio-visit-2030-01-08-booking.ics" in resp.headers["Content-Disposition"]
        assert "STATUS:TENTATIVE" in resp.get_data(as_text=True)


class TestRateLimit:
    def test_hold_attempts_are_limited(self, app, client, studio):
        app.config["HOLD_RATE_MAX_REQUESTS"] = 1
        assert create_hold(client, studio).status_code == 201
        resp = create_hold(client, studio, **ONE_PM)
        assert resp.status_code == 429
        assert resp.get_json()["retry_after_seconds"] >= 1
        # other callers have their own window
        assert create_hold(client, studio, who="ben@example.org", **ONE_PM).status_code == 201


class TestParticipants:
    def test_roster_over_http(self, client, room):
        booking = create_hold(client, room, capacity=1).get_json()
        url = f"/bookings/{booking['id']}/participants"

        first = client.post(url, headers=headers("ben@example.org"))
        assert first.status_code == 201
        assert first.get_json()["status"] == "registered"
        assert client.post(url, headers=headers("ben@example.org")).status_code == 200

        waiting = client.post(url, json={"identity": "cy@example.org"}, headers=headers())
        assert waiting.status_code == 201
        assert waiting.get_json()["status"] == "waitlisted"

        # only the booker or an admin adds other people
        assert client.post(url, json={"identity": "dan@example.org"},
                           headers=headers("ben@example.org")).status_code == 403

        resp = client.post(f"{url}/detach", headers=headers("ben@example.org"))
        assert resp.status_code == 200
        assert resp.get_json()["promoted"]["identity"] == "cy@example.org"

        listing = client.get(url, headers=headers()).get_json()
        assert [(p["identity"], p["status"]) for p in listing] == [("cy@example.org", "registered")]


class TestWaitlistRoutes:
    def test_join_list_and_leave(self, client, studio):
        create_hold(client, studio)
        resp = client.post(f"/resources/{studio.id}/waitlist", json=NOON, headers=headers("ben@example.org"))
        assert resp.status_code == 201
        entry = resp.get_json()

        duplicate = client.post(f"/resources/{studio.id}/waitlist", json=NOON, headers=headers("ben@example.org"))
        assert duplicate.status_code == 400

        mine = client.get("/waitlist/me", headers=headers("ben@example.org")).get_json()
        assert [e["id"] for e in mine] == [entry["id"]]

        assert client.delete(f"/waitlist/{entry['id']}", headers=headers("cy@example.org")).status_code == 404
        left = client.delete(f"/waitlist/{entry['id']}", headers=headers("ben@example.org"))
        assert left.get_json()["status"] == "cancelled"


class TestAuditAndGateway:
    def test_actions_are_audited(self, client, session, studio):
        booking = create_hold(client, studio).get_json()
        client.post(f"/bookings/{booking['id']}/cancel", headers=headers())

        rows = client.get(f"/admin/audit-logs?entity=reservation&entity_id={booking['id']}",
                          headers=admin_headers()).get_json()
        assert {r["action"] for r in rows} == {"BOOKING_HOLD", "BOOKING_CANCEL"}
        assert all(r["identity"] == "ana@example.org" for r in rows)
        assert session.query(AuditLog).count() == 2

    def test_audit_logs_need_admin(self, client):
        assert client.get("/admin/audit-logs", headers=headers()).status_code == 403

    def test_identity_headers_need_gateway_key_when_configured(self, app, client, studio):
        app.config["AUTH_GATEWAY_SECRET"] = "s3cret"
        assert create_hold(client, studio).status_code == 401

        trusted = dict(headers(), **{"X-Auth-Gateway-Key": "s3cret"})
        resp = client.post("/bookings", json=dict(NOON, resource_id=studio.id), headers=trusted)
        assert resp.status_code == 201
