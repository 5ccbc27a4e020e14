"""Machines, documents, templates, companies and uploads."""
import base64

from conftest import auth_header


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class TestMachines:
    def test_create_and_duplicate_code(self, client, admin_headers):
        body = {"machine_code": "PRS-7", "name": "Hydraulic press", "status": "under repair"}
        resp = client.post("/api/machines", json=body, headers=admin_headers)
        assert resp.status_code == 201
        assert resp.json()["data"]["status"] == "MAINTENANCE"

        assert client.post("/api/machines", json=body, headers=admin_headers).status_code == 409

    def test_list_merges_maintenance_overview(self, client, machine, admin_headers):
        row = client.get("/api/machines", headers=admin_headers).json()["data"][0]
        assert row["machine_code"] == "CNC-01"
        assert row["work_orders_count"] == 0
        assert row["next_pm_date"] is None

    def test_lookup_by_code(self, client, machine, tech_headers):
        resp = client.get("/api/machines/code/CNC-01", headers=tech_headers)
        assert resp.json()["data"]["id"] == str(machine.id)
        assert client.get("/api/machines/code/NOPE", headers=tech_headers).status_code == 404

    def test_bulk_status(self, client, machine, admin_headers):
        resp = client.patch(
            "/api/machines/bulk-status",
            json={"machine_ids": [str(machine.id)], "status": "inactive"},
            headers=admin_headers,
        )
        assert resp.json()["data"] == {"updated": 1}
        stats = client.get("/api/machines/stats", headers=admin_headers).json()["data"]
        assert stats["by_status"]["INACTIVE"] == 1

    def test_qr_code_is_png(self, client, machine, tech_headers):
        resp = client.get(f"/api/machines/{machine.id}/qr", params={"size": 4}, headers=tech_headers)
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"
        assert 'filename="CNC-01-qr.png"' in resp.headers["content-disposition"]
        assert resp.content.startswith(b"\x89PNG")

    def test_image_upload_replaces_previous(self, client, machine, tech_headers, storage_dir):
        url = f"/api/machines/{machine.id}/upload-image"
        first = client.post(url, files={"file": ("a.png", PNG, "image/png")}, headers=tech_headers).json()["data"]
        second = client.post(url, files={"file": ("b.png", PNG, "image/png")}, headers=tech_headers).json()["data"]

        stored = [p.name for p in (storage_dir / "uploads").rglob("*.png")]
        assert len(stored) == 1
        assert second["image_url"].endswith(stored[0])
        assert first["image_url"] != second["image_url"]

    def test_delete_cascades_parts(self, client, machine, part, admin_headers):
        machine_id, part_id = str(machine.id), str(part.id)
        assert client.delete(f"/api/machines/{machine_id}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/machine-parts/{part_id}", headers=admin_headers).status_code == 404


class TestDocuments:
    def test_upload_and_download(self, client, machine, tech_headers):
        resp = client.post(
            f"/api/machine-documents/machine/{machine.id}/upload",
            files={"file": ("manual.pdf", b"%PDF-1.4 test", "application/pdf")},
            data={"title": "Operator manual", "document_type": "manual"},
            headers=tech_headers,
        )
        assert resp.status_code == 201
        doc = resp.json()["data"]
        assert doc["document_type"] == "MANUAL"

        download = client.get(f"/api/machine-documents/{doc['id']}/download", headers=tech_headers, follow_redirects=False)
        assert download.status_code == 307
        assert download.headers["location"] == doc["file_url"]

    def test_executable_rejected(self, client, machine, tech_headers):
        resp = client.post(
            f"/api/machine-documents/machine/{machine.id}/upload",
            files={"file": ("run.exe", b"MZ", "application/x-msdownload")},
            headers=tech_headers,
        )
        assert resp.status_code == 400

    def test_unknown_machine(self, client, tech_headers):
        resp = client.post(
            "/api/machine-documents/machine/00000000-0000-0000-0000-000000000000/upload",
            files={"file": ("manual.pdf", b"%PDF", "application/pdf")},
            headers=tech_headers,
        )
        assert resp.status_code == 404


class TestTemplates:
    def test_create_orders_items(self, client, admin_headers):
        resp = client.post(
            "/api/pm-templates",
            json={
                "name": "Weekly press check",
                "frequency_type": "weekly",
                "frequency_value": 2,
                "items": [{"check_item": "Oil level"}, {"check_item": "Guards", "has_photo": True}],
            },
            headers=admin_headers,
        )
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["frequency_type"] == "WEEKLY"
        assert [(i["step_order"], i["check_item"]) for i in data["items"]] == [(1, "Oil level"), (2, "Guards")]

    def test_template_with_schedules_cannot_be_deleted(self, client, template, machine, admin_headers, due_soon):
        client.post(
            "/api/pm-schedules",
            json={"pm_template_id": str(template.id), "machine_id": str(machine.id), "due_date": due_soon.isoformat()},
            headers=admin_headers,
        )
        assert client.delete(f"/api/pm-templates/{template.id}", headers=admin_headers).status_code == 409

    def test_technician_cannot_edit(self, client, template, tech_headers):
        assert client.put(f"/api/pm-templates/{template.id}", json={"name": "x"}, headers=tech_headers).status_code == 403


class TestCompanies:
    def test_crud(self, client, admin_headers):
        created = client.post("/api/companies", json={"name": "Acme Plastics"}, headers=admin_headers)
        assert created.status_code == 201
        company_id = created.json()["data"]["id"]

        updated = client.put(f"/api/companies/{company_id}", json={"phone": "0812345678"}, headers=admin_headers)
        assert updated.json()["data"]["phone"] == "0812345678"

        detail = client.get(f"/api/companies/{company_id}", headers=admin_headers).json()["data"]
        assert detail["name"] == "Acme Plastics"
        assert "counts" in detail

        assert client.delete(f"/api/companies/{company_id}", headers=admin_headers).status_code == 200

    def test_company_with_users_cannot_be_deleted(self, client, admin_headers):
        company_id = client.post("/api/companies", json={"name": "Acme"}, headers=admin_headers).json()["data"]["id"]
        client.post(
            "/api/auth/register",
            json={"email": "buyer@acme.example.com", "password": "longenough", "company_id": company_id},
        )
        resp = client.delete(f"/api/companies/{company_id}", headers=admin_headers)
        assert resp.status_code == 409

    def test_search(self, client, admin_headers, customer):
        client.post("/api/companies", json={"name": "Acme Plastics"}, headers=admin_headers)
        client.post("/api/companies", json={"name": "Bolt Works"}, headers=admin_headers)
        found = client.get("/api/companies", params={"search": "acme"}, headers=auth_header(customer)).json()
        assert [c["name"] for c in found["data"]] == ["Acme Plastics"]


class TestUploads:
    def test_image_upload(self, client, tech_headers):
        resp = client.post(
            "/api/upload/image",
            files={"file": ("step.png", PNG, "image/png")},
            data={"folder": "pm-photos"},
            headers=tech_headers,
        )
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["url"].startswith("/uploads/pm-photos/")
        assert data["size"] == len(PNG)

    def test_unknown_folder(self, client, tech_headers):
        resp = client.post(
            "/api/upload/image",
            files={"file": ("step.png", PNG, "image/png")},
            data={"folder": "../etc"},
            headers=tech_headers,
        )
        assert resp.status_code == 400

    def test_signature_data_url(self, client, tech_headers):
        data_url = "data:image/png;base64," + base64.b64encode(PNG).decode()
        resp = client.post("/api/upload/signature", data={"signature": data_url}, headers=tech_headers)
        assert resp.status_code == 201
        assert resp.json()["data"]["url"].startswith("/uploads/signatures/")
        assert resp.json()["data"]["mime_type"] == "image/png"

    def test_signature_must_be_data_url(self, client, tech_headers):
        resp = client.post("/api/upload/signature", data={"signature": "hello"}, headers=tech_headers)
        assert resp.status_code == 400

    def test_signature_missing(self, client, tech_headers):
        assert client.post("/api/upload/signature", data={}, headers=tech_headers).status_code == 400


class TestNotifications:
    def test_subscribe_and_unsubscribe(self, client, tech_headers):
        body = {"endpoint": "https://push.example.com/abc", "keys": {"p256dh": "key", "auth": "secret"}}
        assert client.post("/api/notifications/subscribe", json=body, headers=tech_headers).status_code == 201
        # Same endpoint again updates in place
        assert client.post("/api/notifications/subscribe", json=body, headers=tech_headers).status_code == 201

        resp = client.post("/api/notifications/unsubscribe", json={"endpoint": body["endpoint"]}, headers=tech_headers)
        assert resp.status_code == 200
        again = client.post("/api/notifications/unsubscribe", json={"endpoint": body["endpoint"]}, headers=tech_headers)
        assert again.status_code == 404
