"""Machine parts and the inventory ledger over HTTP."""
from conftest import auth_header


class TestParts:
    def test_opening_stock_is_recorded_as_adjust(self, client, machine, admin_headers):
        resp = client.post(
            "/api/machine-parts",
            json={"machine_id": str(machine.id), "part_code": "FLT-9", "part_name": "Oil filter", "quantity_on_hand": 6},
            headers=admin_headers,
        )
        assert resp.status_code == 201
        part = resp.json()["data"]
        assert part["quantity_on_hand"] == 6

        ledger = client.get(f"/api/inventory-transactions/part/{part['id']}", headers=admin_headers).json()
        assert ledger["pagination"]["total"] == 1
        assert ledger["data"][0]["type"] == "ADJUST"
        assert ledger["data"][0]["balance_after"] == 6

    def test_duplicate_part_code_on_same_machine(self, client, part, admin_headers):
        resp = client.post(
            "/api/machine-parts",
            json={"machine_id": str(part.machine_id), "part_code": "BRG-1", "part_name": "Again"},
            headers=admin_headers,
        )
        assert resp.status_code == 409

    def test_unknown_machine(self, client, admin_headers):
        resp = client.post(
            "/api/machine-parts",
            json={"machine_id": "00000000-0000-0000-0000-000000000000", "part_code": "P", "part_name": "P"},
            headers=admin_headers,
        )
        assert resp.status_code == 404

    def test_low_stock_flag(self, client, part, tech_headers):
        client.patch(f"/api/machine-parts/{part.id}/stock", json={"quantity": 1, "operation": "set"}, headers=tech_headers)
        low = client.get(f"/api/machine-parts/machine/{part.machine_id}/low-stock", headers=tech_headers).json()["data"]
        assert [p["part_code"] for p in low] == ["BRG-1"]
        assert low[0]["is_low_stock"] is True


class TestStockChanges:
    def test_add_remove_set(self, client, part, tech_headers):
        url = f"/api/machine-parts/{part.id}/stock"

        resp = client.patch(url, json={"quantity": 5, "operation": "add"}, headers=tech_headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["part"]["quantity_on_hand"] == 15
        assert resp.json()["data"]["transaction"]["type"] == "IN"

        resp = client.patch(url, json={"quantity": 4, "operation": "remove"}, headers=tech_headers)
        assert resp.json()["data"]["part"]["quantity_on_hand"] == 11

        resp = client.patch(url, json={"quantity": 2, "operation": "set"}, headers=tech_headers)
        assert resp.json()["data"]["part"]["quantity_on_hand"] == 2
        assert resp.json()["data"]["transaction"]["type"] == "ADJUST"

    def test_removing_more_than_on_hand(self, client, part, tech_headers):
        resp = client.patch(
            f"/api/machine-parts/{part.id}/stock", json={"quantity": 11, "operation": "remove"}, headers=tech_headers
        )
        assert resp.status_code == 409
        body = resp.json()
        assert body["code"] == "INSUFFICIENT_STOCK"
        assert body["details"] == {"on_hand": 10, "requested": 11}

        current = client.get(f"/api/machine-parts/{part.id}", headers=tech_headers).json()["data"]
        assert current["quantity_on_hand"] == 10

    def test_unknown_operation(self, client, part, tech_headers):
        resp = client.patch(
            f"/api/machine-parts/{part.id}/stock", json={"quantity": 1, "operation": "borrow"}, headers=tech_headers
        )
        assert resp.status_code == 400

    def test_quantity_edit_goes_through_ledger(self, client, part, tech_headers):
        resp = client.put(f"/api/machine-parts/{part.id}", json={"quantity_on_hand": 25}, headers=tech_headers)
        assert resp.json()["data"]["quantity_on_hand"] == 25
        summary = client.get(f"/api/inventory-transactions/summary/{part.id}", headers=tech_headers).json()["data"]
        assert summary["ledger_balance"] == 25
        assert summary["in_sync"] is True


class TestTransactions:
    def test_create_out_transaction(self, client, part, tech_headers):
        resp = client.post(
            "/api/inventory-transactions",
            json={"part_id": str(part.id), "type": "out", "quantity": 3, "reference_type": "work_order", "reference_id": "RW-1"},
            headers=tech_headers,
        )
        assert resp.status_code == 201
        txn = resp.json()["data"]
        assert txn["type"] == "OUT"
        assert txn["reference_type"] == "WORK_ORDER"
        assert txn["balance_after"] == 7

    def test_invalid_type_rejected(self, client, part, tech_headers):
        resp = client.post(
            "/api/inventory-transactions",
            json={"part_id": str(part.id), "type": "steal", "quantity": 3},
            headers=tech_headers,
        )
        assert resp.status_code == 400

    def test_quick_adjustment(self, client, part, tech_headers):
        resp = client.post(
            "/api/inventory-transactions/quick-adjustment",
            json={"part_id": str(part.id), "new_quantity": 40, "reason": "Cycle count"},
            headers=tech_headers,
        )
        assert resp.status_code == 200
        txn = resp.json()["data"]
        assert txn["type"] == "ADJUST"
        assert txn["reference_type"] == "ADJUSTMENT"
        assert txn["notes"] == "Cycle count"
        assert txn["part"]["part_code"] == "BRG-1"

    def test_admin_deletes_in_and_balance_is_restored(self, client, part, tech_headers, admin_headers):
        created = client.post(
            "/api/inventory-transactions",
            json={"part_id": str(part.id), "type": "IN", "quantity": 5},
            headers=tech_headers,
        ).json()["data"]

        assert client.delete(f"/api/inventory-transactions/{created['id']}", headers=tech_headers).status_code == 403
        assert client.delete(f"/api/inventory-transactions/{created['id']}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/machine-parts/{part.id}", headers=admin_headers).json()["data"]["quantity_on_hand"] == 10

    def test_list_filters_by_type(self, client, part, tech_headers):
        client.patch(f"/api/machine-parts/{part.id}/stock", json={"quantity": 1, "operation": "remove"}, headers=tech_headers)
        resp = client.get("/api/inventory-transactions", params={"type": "OUT"}, headers=tech_headers).json()
        assert resp["pagination"]["total"] == 1
        assert resp["data"][0]["quantity"] == 1

    def test_audit_report_is_staff_only(self, client, part, customer):
        resp = client.get("/api/inventory-transactions/audit-report", headers=auth_header(customer))
        assert resp.status_code == 403
