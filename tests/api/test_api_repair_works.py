"""Repair work lifecycle, completion gates and parts consumption."""
import re

import pytest

from conftest import auth_header


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.fixture
def repair(client, machine, technician, admin_headers):
    resp = client.post(
        "/api/repair-works",
        json={
            "machine_id": str(machine.id),
            "title": "Spindle noise",
            "priority": "critical",
            "assigned_to": str(technician.id),
            "items": [{"title": "Replace bearing"}],
        },
        headers=admin_headers,
    )
    assert resp.status_code == 201
    return resp.json()["data"]


def _upload(client, repair_id, photo_type, headers):
    return client.post(
        f"/api/repair-works/{repair_id}/photos",
        files=[("files", (f"{photo_type}.png", PNG, "image/png"))],
        data={"photo_type": photo_type},
        headers=headers,
    )


def _make_ready(client, repair, headers):
    item_id = repair["items"][0]["id"]
    client.patch(
        f"/api/repair-works/{repair['id']}/items/{item_id}",
        json={"status": "completed", "remarks": "Bearing swapped"},
        headers=headers,
    )
    _upload(client, repair["id"], "before", headers)
    _upload(client, repair["id"], "after", headers)


class TestCreate:
    def test_work_order_number_and_machine_status(self, client, repair, machine, admin_headers):
        assert re.fullmatch(r"RW-\d{6}-001", repair["work_order_number"])
        assert repair["status"] == "OPEN"
        assert repair["priority"] == "CRITICAL"
        assert [i["item_order"] for i in repair["items"]] == [1]

        m = client.get(f"/api/machines/{machine.id}", headers=admin_headers).json()["data"]
        assert m["status"] == "MAINTENANCE"
        assert m["work_orders_count"] == 1

    def test_numbers_increase_within_month(self, client, repair, machine, admin_headers):
        second = client.post(
            "/api/repair-works", json={"machine_id": str(machine.id), "title": "Leak"}, headers=admin_headers
        ).json()["data"]
        assert second["work_order_number"].endswith("-002")

    def test_blank_title_rejected(self, client, machine, admin_headers):
        resp = client.post("/api/repair-works", json={"machine_id": str(machine.id), "title": "  "}, headers=admin_headers)
        assert resp.status_code == 400

    def test_customer_reports_and_sees_own_repair(self, client, machine, customer, other_technician):
        headers = auth_header(customer)
        created = client.post(
            "/api/repair-works", json={"machine_id": str(machine.id), "title": "Alarm"}, headers=headers
        ).json()["data"]
        assert created["reported_by"] == str(customer.id)
        assert client.get(f"/api/repair-works/{created['id']}", headers=headers).status_code == 200
        assert client.get(f"/api/repair-works/{created['id']}", headers=auth_header(other_technician)).status_code == 404

    def test_unassigned_report_notifies_admins(self, client, machine, customer, admin_headers):
        created = client.post(
            "/api/repair-works", json={"machine_id": str(machine.id), "title": "Smoke"}, headers=auth_header(customer)
        ).json()["data"]
        notes = client.get("/api/notifications", headers=admin_headers).json()["data"]
        assert [n["title"] for n in notes] == ["New Repair Reported"]
        assert notes[0]["url"] == f"/repair-works/{created['id']}"

    def test_assignee_is_notified(self, client, repair, tech_headers):
        notes = client.get("/api/notifications", headers=tech_headers).json()["data"]
        assert notes[0]["title"] == "New Repair Assigned"
        assert notes[0]["body"].startswith(repair["work_order_number"])


class TestItemsAndPhotos:
    def test_item_needs_remarks_to_complete(self, client, repair, tech_headers):
        item_id = repair["items"][0]["id"]
        resp = client.patch(
            f"/api/repair-works/{repair['id']}/items/{item_id}", json={"status": "COMPLETED"}, headers=tech_headers
        )
        assert resp.status_code == 422

    def test_upload_photos(self, client, repair, tech_headers):
        resp = _upload(client, repair["id"], "before", tech_headers)
        assert resp.status_code == 201
        photos = resp.json()["data"]
        assert photos[0]["photo_type"] == "BEFORE"
        assert photos[0]["file_url"].startswith("/uploads/repair-photos/")

    def test_non_image_upload_rejected(self, client, repair, tech_headers):
        resp = client.post(
            f"/api/repair-works/{repair['id']}/photos",
            files=[("files", ("notes.txt", b"hello", "text/plain"))],
            headers=tech_headers,
        )
        assert resp.status_code == 400

    def test_invalid_photo_type(self, client, repair, tech_headers):
        assert _upload(client, repair["id"], "sideways", tech_headers).status_code == 400

    def test_item_photos(self, client, repair, tech_headers):
        item_id = repair["items"][0]["id"]
        client.post(
            f"/api/repair-works/{repair['id']}/photos",
            files=[("files", ("p.png", PNG, "image/png"))],
            data={"photo_type": "progress", "item_id": item_id},
            headers=tech_headers,
        )
        photos = client.get(f"/api/repair-works/{repair['id']}/items/{item_id}/photos", headers=tech_headers).json()
        assert [p["photo_type"] for p in photos["data"]] == ["PROGRESS"]


class TestCompletion:
    def test_blockers_are_reported_in_order(self, client, repair, tech_headers):
        resp = client.post(f"/api/repair-works/{repair['id']}/complete", json={}, headers=tech_headers)
        assert resp.status_code == 422
        assert resp.json()["message"] == "All repair items must be completed"

        detail = client.get(f"/api/repair-works/{repair['id']}", headers=tech_headers).json()["data"]
        assert detail["completion_blockers"] == [
            "All repair items must be completed",
            "Every repair item needs remarks",
            "At least one BEFORE photo is required",
            "At least one PROGRESS or AFTER photo is required",
        ]

    def test_complete_consumes_parts(self, client, repair, part, machine, tech_headers, admin_headers):
        _make_ready(client, repair, tech_headers)
        assert client.get(f"/api/repair-works/{repair['id']}", headers=tech_headers).json()["data"]["completion_blockers"] == []

        resp = client.post(
            f"/api/repair-works/{repair['id']}/complete",
            json={"resolution": "Bearing replaced", "parts_used": [{"part_id": str(part.id), "quantity_used": 2}]},
            headers=tech_headers,
        )
        assert resp.status_code == 200
        done = resp.json()["data"]
        assert done["status"] == "COMPLETED"
        assert done["actual_cost"] == 10.0
        assert done["parts_used"][0]["quantity_used"] == 2

        ledger = client.get(
            "/api/inventory-transactions", params={"reference_type": "WORK_ORDER"}, headers=admin_headers
        ).json()["data"]
        assert len(ledger) == 1
        assert ledger[0]["type"] == "OUT"
        assert ledger[0]["reference_id"] == repair["id"]
        assert ledger[0]["balance_after"] == 8

        m = client.get(f"/api/machines/{machine.id}", headers=admin_headers).json()["data"]
        assert m["status"] == "ACTIVE"

    def test_not_enough_stock_leaves_repair_open(self, client, repair, part, tech_headers):
        _make_ready(client, repair, tech_headers)
        resp = client.post(
            f"/api/repair-works/{repair['id']}/complete",
            json={"parts_used": [{"part_id": str(part.id), "quantity_used": 50}]},
            headers=tech_headers,
        )
        assert resp.status_code == 409
        detail = client.get(f"/api/repair-works/{repair['id']}", headers=tech_headers).json()["data"]
        assert detail["status"] != "COMPLETED"
        assert detail["parts_used"] == []

    def test_machine_stays_down_while_another_repair_is_open(self, client, repair, machine, tech_headers, admin_headers):
        client.post("/api/repair-works", json={"machine_id": str(machine.id), "title": "Second"}, headers=admin_headers)
        _make_ready(client, repair, tech_headers)
        client.post(f"/api/repair-works/{repair['id']}/complete", json={}, headers=tech_headers)

        m = client.get(f"/api/machines/{machine.id}", headers=admin_headers).json()["data"]
        assert m["status"] == "MAINTENANCE"


class TestOutsideTechnician:
    def test_cannot_change_a_repair_it_cannot_see(self, client, repair, other_technician, tech_headers):
        headers = auth_header(other_technician)
        base = f"/api/repair-works/{repair['id']}"
        assert client.get(base, headers=headers).status_code == 404
        assert client.post(f"{base}/cancel", json={"reason": "Nope"}, headers=headers).status_code == 404
        assert client.delete(f"{base}/unassign", headers=headers).status_code == 404
        assert client.post(f"{base}/assign", json={"user_id": str(other_technician.id)}, headers=headers).status_code == 404
        bulk = client.post(f"{base}/assign/bulk", json={"user_ids": [str(other_technician.id)]}, headers=headers)
        assert bulk.status_code == 404

        detail = client.get(base, headers=tech_headers).json()["data"]
        assert detail["status"] == "OPEN"
        assert [a["user_id"] for a in detail["assignments"]] == [repair["assigned_to"]]

    def test_cannot_delete_evidence_photos(self, client, repair, other_technician, tech_headers):
        photo = _upload(client, repair["id"], "before", tech_headers).json()["data"][0]
        url = f"/api/repair-works/{repair['id']}/photos/{photo['id']}"
        assert client.delete(url, headers=auth_header(other_technician)).status_code == 404

        detail = client.get(f"/api/repair-works/{repair['id']}", headers=tech_headers).json()["data"]
        assert "At least one BEFORE photo is required" not in detail["completion_blockers"]


class TestAssignmentAndLifecycle:
    def test_assign_moves_open_repair_to_in_progress(self, client, machine, other_technician, admin_headers):
        created = client.post(
            "/api/repair-works", json={"machine_id": str(machine.id), "title": "Belt"}, headers=admin_headers
        ).json()["data"]
        resp = client.post(
            f"/api/repair-works/{created['id']}/assign", json={"user_id": str(other_technician.id)}, headers=admin_headers
        )
        detail = resp.json()["data"]
        assert detail["status"] == "IN_PROGRESS"
        assert detail["assigned_to"] == str(other_technician.id)
        assert [a["user_id"] for a in detail["assignments"]] == [str(other_technician.id)]

    def test_bulk_assign_skips_existing(self, client, repair, technician, other_technician, admin_headers):
        resp = client.post(
            f"/api/repair-works/{repair['id']}/assign/bulk",
            json={"user_ids": [str(technician.id), str(other_technician.id)]},
            headers=admin_headers,
        )
        assert resp.json()["message"] == "1 technicians assigned"
        assert len(resp.json()["data"]["assignments"]) == 2

    def test_cancel_restores_machine(self, client, repair, machine, tech_headers, admin_headers):
        resp = client.post(f"/api/repair-works/{repair['id']}/cancel", json={"reason": "Duplicate"}, headers=tech_headers)
        assert resp.json()["data"]["status"] == "CANCELLED"
        assert resp.json()["data"]["resolution"] == "Cancelled: Duplicate"
        m = client.get(f"/api/machines/{machine.id}", headers=admin_headers).json()["data"]
        assert m["status"] == "ACTIVE"

        again = client.post(f"/api/repair-works/{repair['id']}/start", headers=tech_headers)
        assert again.status_code == 422

    def test_admin_delete(self, client, repair, tech_headers, admin_headers):
        assert client.delete(f"/api/repair-works/{repair['id']}", headers=tech_headers).status_code == 403
        assert client.delete(f"/api/repair-works/{repair['id']}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/repair-works/{repair['id']}", headers=admin_headers).status_code == 404

    def test_list_pagination_links(self, client, repair, admin_headers):
        body = client.get("/api/repair-works", params={"limit": 1}, headers=admin_headers).json()
        assert body["pagination"] == {"page": 1, "limit": 1, "total": 1, "pages": 1, "has_next": False, "has_prev": False}
