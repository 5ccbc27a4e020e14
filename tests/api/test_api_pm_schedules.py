"""PM schedule workflow: create, execute, complete, skip, cancel."""
from datetime import datetime, timezone

import pytest
from dateutil.parser import isoparse

from conftest import auth_header
from pmhub.models.models import PMResult, PMResultPhoto, PMTemplate, PMTemplateItem


FIXED_DUE = datetime(2030, 1, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def schedule(client, machine, template, technician, admin_headers, due_soon):
    resp = client.post(
        "/api/pm-schedules",
        json={
            "pm_template_id": str(template.id),
            "machine_id": str(machine.id),
            "due_date": due_soon.isoformat(),
            "priority": "high",
            "assigned_to": [str(technician.id)],
        },
        headers=admin_headers,
    )
    assert resp.status_code == 201
    return resp.json()["data"]


def _item_ids(template):
    return [str(i.id) for i in sorted(template.items, key=lambda i: i.step_order)]


class TestCreate:
    def test_created_schedule(self, schedule, technician):
        assert schedule["status"] == "SCHEDULED"
        assert schedule["priority"] == "HIGH"
        assert schedule["schedule_code"].startswith("PM-CNC01-")
        assert schedule["assigned_user_ids"] == [str(technician.id)]
        assert schedule["template"]["name"] == "Monthly lathe check"

    def test_assignee_is_notified(self, client, schedule, tech_headers):
        notes = client.get("/api/notifications", headers=tech_headers).json()["data"]
        assert [n["title"] for n in notes] == ["New PM Assigned"]
        assert notes[0]["url"] == f"/pm-schedules/{schedule['id']}"

    def test_second_open_schedule_for_same_pair_conflicts(self, client, schedule, machine, template, admin_headers):
        resp = client.post(
            "/api/pm-schedules",
            json={"pm_template_id": str(template.id), "machine_id": str(machine.id), "due_date": FIXED_DUE.isoformat()},
            headers=admin_headers,
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "CONFLICT"

    def test_unknown_assignee(self, client, machine, template, admin_headers):
        resp = client.post(
            "/api/pm-schedules",
            json={
                "pm_template_id": str(template.id),
                "machine_id": str(machine.id),
                "due_date": FIXED_DUE.isoformat(),
                "assigned_to": ["00000000-0000-0000-0000-000000000001"],
            },
            headers=admin_headers,
        )
        assert resp.status_code == 404

    def test_customer_cannot_create(self, client, machine, template, customer):
        resp = client.post(
            "/api/pm-schedules",
            json={"pm_template_id": str(template.id), "machine_id": str(machine.id), "due_date": FIXED_DUE.isoformat()},
            headers=auth_header(customer),
        )
        assert resp.status_code == 403


class TestScope:
    def test_unassigned_technician_sees_nothing(self, client, schedule, other_technician):
        headers = auth_header(other_technician)
        assert client.get(f"/api/pm-schedules/{schedule['id']}", headers=headers).status_code == 404
        assert client.get("/api/pm-schedules", headers=headers).json()["pagination"]["total"] == 0

    def test_unassigned_technician_cannot_start(self, client, schedule, other_technician):
        resp = client.post(f"/api/pm-schedules/{schedule['id']}/start", headers=auth_header(other_technician))
        assert resp.status_code == 404

    def test_assigned_technician_lists_it(self, client, schedule, tech_headers):
        listing = client.get("/api/pm-schedules", headers=tech_headers).json()
        assert [s["id"] for s in listing["data"]] == [schedule["id"]]


class TestExecution:
    def test_saving_a_step_starts_the_schedule(self, client, schedule, template, tech_headers):
        first, _ = _item_ids(template)
        resp = client.post(
            f"/api/pm-schedules/{schedule['id']}/step",
            json={
                "pm_template_item_id": first,
                "status": "pass",
                "measured_value": "OK",
                "before_photos": [{"file_url": "/uploads/pm-photos/a.jpg"}],
            },
            headers=tech_headers,
        )
        assert resp.status_code == 200
        result = resp.json()["data"]
        assert result["status"] == "PASS"
        assert [p["photo_type"] for p in result["photos"]] == ["BEFORE"]

        detail = client.get(f"/api/pm-schedules/{schedule['id']}", headers=tech_headers).json()["data"]
        assert detail["status"] == "IN_PROGRESS"
        assert detail["started_at"] is not None

    def test_saving_a_step_twice_updates_in_place(self, client, schedule, template, tech_headers):
        first, _ = _item_ids(template)
        url = f"/api/pm-schedules/{schedule['id']}/step"
        client.post(url, json={"pm_template_item_id": first, "status": "pass"}, headers=tech_headers)
        client.post(url, json={"pm_template_item_id": first, "status": "fail", "remarks": "Low"}, headers=tech_headers)

        detail = client.get(f"/api/pm-schedules/{schedule['id']}", headers=tech_headers).json()["data"]
        assert len(detail["results"]) == 1
        assert detail["results"][0]["status"] == "FAIL"

    def test_bulk_results(self, client, schedule, template, tech_headers):
        steps = [{"pm_template_item_id": i, "status": "PASS"} for i in _item_ids(template)]
        resp = client.post(f"/api/pm-schedules/{schedule['id']}/results", json={"results": steps}, headers=tech_headers)
        assert resp.status_code == 200
        assert len(resp.json()["data"]["results"]) == 2

    def test_item_from_another_template(self, client, schedule, db, tech_headers):
        other = PMTemplate(name="Other", frequency_type="WEEKLY", frequency_value=1)
        other.items.append(PMTemplateItem(check_item="Unrelated", step_order=1))
        db.add(other)
        db.commit()
        resp = client.post(
            f"/api/pm-schedules/{schedule['id']}/step",
            json={"pm_template_item_id": str(other.items[0].id)},
            headers=tech_headers,
        )
        assert resp.status_code == 404


class TestResultPhotos:
    @pytest.fixture
    def result(self, client, schedule, template, tech_headers):
        first, _ = _item_ids(template)
        resp = client.post(
            f"/api/pm-schedules/{schedule['id']}/step",
            json={"pm_template_item_id": first, "before_photos": [{"file_url": "/uploads/pm-photos/b.jpg"}]},
            headers=tech_headers,
        )
        return resp.json()["data"]

    def test_outside_technician_cannot_touch_evidence(self, client, result, other_technician, tech_headers):
        headers = auth_header(other_technician)
        url = f"/api/pm-schedules/results/{result['id']}/photos"
        photo_id = result["photos"][0]["id"]

        assert client.get(url, headers=headers).status_code == 404
        assert client.put(url, json={"before_photos": [], "after_photos": []}, headers=headers).status_code == 404
        assert client.post(url, json={"file_url": "/uploads/pm-photos/x.jpg"}, headers=headers).status_code == 404
        assert client.delete(f"/api/pm-schedules/results/photos/{photo_id}", headers=headers).status_code == 404

        photos = client.get(url, headers=tech_headers).json()["data"]
        assert [p["id"] for p in photos] == [photo_id]

    def test_evidence_is_frozen_once_completed(self, client, schedule, result, tech_headers):
        body = {"customer_signature_url": "/uploads/signatures/s.png", "customer_signer_name": "Dana"}
        assert client.post(f"/api/pm-schedules/{schedule['id']}/complete", json=body, headers=tech_headers).status_code == 200

        url = f"/api/pm-schedules/results/{result['id']}/photos"
        replaced = client.put(url, json={"before_photos": [], "after_photos": []}, headers=tech_headers)
        assert replaced.status_code == 422
        assert replaced.json()["message"] == "PM schedule is already closed"
        photo_id = result["photos"][0]["id"]
        assert client.delete(f"/api/pm-schedules/results/photos/{photo_id}", headers=tech_headers).status_code == 422
        assert len(client.get(url, headers=tech_headers).json()["data"]) == 1


class TestCompletion:
    def test_signature_is_required(self, client, schedule, tech_headers):
        resp = client.post(f"/api/pm-schedules/{schedule['id']}/complete", json={}, headers=tech_headers)
        assert resp.status_code == 422
        assert resp.json()["code"] == "PRECONDITION_NOT_MET"
        assert resp.json()["message"] == "Customer signature is required"

    def test_signer_name_is_required(self, client, schedule, tech_headers):
        resp = client.post(
            f"/api/pm-schedules/{schedule['id']}/complete",
            json={"customer_signature_url": "/uploads/signatures/s.png"},
            headers=tech_headers,
        )
        assert resp.status_code == 422
        assert resp.json()["message"] == "Customer signer name is required"

    def test_completion_opens_the_next_link(self, client, schedule, technician, tech_headers):
        resp = client.post(
            f"/api/pm-schedules/{schedule['id']}/complete",
            json={"customer_signature_url": "/uploads/signatures/s.png", "customer_signer_name": "Dana"},
            headers=tech_headers,
        )
        assert resp.status_code == 200
        completed = resp.json()["data"]["completed"]
        successor = resp.json()["data"]["next_schedule"]

        assert completed["status"] == "COMPLETED"
        assert completed["completed_by"] == str(technician.id)
        assert completed["customer_signer_name"] == "Dana"
        assert successor["status"] == "SCHEDULED"
        assert successor["previous_schedule_id"] == completed["id"]
        assert successor["assigned_user_ids"] == [str(technician.id)]
        assert successor["priority"] == "HIGH"

        done_at = isoparse(completed["completed_at"])
        next_due = isoparse(successor["due_date"])
        assert next_due > done_at
        assert (next_due.year * 12 + next_due.month) - (done_at.year * 12 + done_at.month) == 1

    def test_completed_schedule_cannot_be_completed_again(self, client, schedule, tech_headers):
        body = {"customer_signature_url": "/uploads/signatures/s.png", "customer_signer_name": "Dana"}
        client.post(f"/api/pm-schedules/{schedule['id']}/complete", json=body, headers=tech_headers)
        again = client.post(f"/api/pm-schedules/{schedule['id']}/complete", json=body, headers=tech_headers)
        assert again.status_code == 422
        assert again.json()["message"] == "PM schedule is already closed"

    def test_completed_run_shows_in_history(self, client, schedule, tech_headers, other_technician):
        body = {"customer_signature_url": "/uploads/signatures/s.png", "customer_signer_name": "Dana"}
        client.post(f"/api/pm-schedules/{schedule['id']}/complete", json=body, headers=tech_headers)

        mine = client.get("/api/history", headers=tech_headers).json()
        assert mine["pagination"]["total"] == 1
        assert mine["pagination"]["has_next"] is False
        assert client.get("/api/history", headers=auth_header(other_technician)).json()["pagination"]["total"] == 0

        runs = client.get(f"/api/pm-schedules/{schedule['id']}/history", headers=tech_headers).json()["data"]
        assert [r["id"] for r in runs] == [schedule["id"]]


class TestSkipAndCancel:
    @pytest.fixture
    def fixed(self, client, machine, template, technician, admin_headers):
        resp = client.post(
            "/api/pm-schedules",
            json={
                "pm_template_id": str(template.id),
                "machine_id": str(machine.id),
                "due_date": FIXED_DUE.isoformat(),
                "assigned_to": [str(technician.id)],
            },
            headers=admin_headers,
        )
        return resp.json()["data"]

    def test_skip_moves_due_date_from_the_old_due_date(self, client, fixed, tech_headers):
        resp = client.post(f"/api/pm-schedules/{fixed['id']}/skip", json={"reason": "Line down"}, headers=tech_headers)
        assert resp.status_code == 200
        skipped = resp.json()["data"]["skipped"]
        successor = resp.json()["data"]["next_schedule"]
        assert skipped["status"] == "SKIPPED"
        assert skipped["remarks"] == "Skipped: Line down"
        assert isoparse(successor["due_date"]) == datetime(2030, 2, 15, 9, 0, tzinfo=timezone.utc)

    def test_cancel_is_admin_only_and_ends_the_chain(self, client, fixed, tech_headers, admin_headers):
        assert client.post(f"/api/pm-schedules/{fixed['id']}/cancel", json={}, headers=tech_headers).status_code == 403

        resp = client.post(f"/api/pm-schedules/{fixed['id']}/cancel", json={"reason": "Sold"}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "CANCELLED"
        listing = client.get("/api/pm-schedules", params={"status": "scheduled"}, headers=admin_headers).json()
        assert listing["pagination"]["total"] == 0

    def test_update_cannot_close(self, client, fixed, tech_headers):
        resp = client.put(f"/api/pm-schedules/{fixed['id']}", json={"status": "COMPLETED"}, headers=tech_headers)
        assert resp.status_code == 400

    def test_overdue_filter(self, client, machine, template, admin_headers):
        client.post(
            "/api/pm-schedules",
            json={
                "pm_template_id": str(template.id),
                "machine_id": str(machine.id),
                "due_date": datetime(2020, 1, 1, tzinfo=timezone.utc).isoformat(),
            },
            headers=admin_headers,
        )
        listing = client.get("/api/pm-schedules", params={"status": "overdue"}, headers=admin_headers).json()
        assert listing["pagination"]["total"] == 1
        assert listing["data"][0]["status"] == "SCHEDULED"
        assert listing["data"][0]["effective_status"] == "OVERDUE"

    def test_admin_delete_removes_results(self, client, db, fixed, template, tech_headers, admin_headers):
        first, _ = _item_ids(template)
        client.post(
            f"/api/pm-schedules/{fixed['id']}/step",
            json={"pm_template_item_id": first, "after_photos": [{"file_url": "/uploads/pm-photos/x.jpg"}]},
            headers=tech_headers,
        )
        assert client.delete(f"/api/pm-schedules/{fixed['id']}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/pm-schedules/{fixed['id']}", headers=admin_headers).status_code == 404
        assert db.query(PMResult).count() == 0
        assert db.query(PMResultPhoto).count() == 0
