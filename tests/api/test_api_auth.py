"""Auth endpoints and role guards."""
from conftest import auth_header


class TestRegisterAndLogin:
    def test_register_creates_customer_with_tokens(self, client):
        resp = client.post(
            "/api/auth/register",
            json={"email": "new@example.com", "password": "longenough", "first_name": "New"},
        )
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["user"]["role_name"] == "CUSTOMER"
        assert data["access_token"] and data["refresh_token"]
        assert data["token_type"] == "bearer"

    def test_duplicate_email_conflicts(self, client, technician):
        resp = client.post("/api/auth/register", json={"email": "TECH@example.com", "password": "longenough"})
        assert resp.status_code == 409
        assert resp.json()["success"] is False

    def test_short_password_is_a_validation_error(self, client):
        resp = client.post("/api/auth/register", json={"email": "x@example.com", "password": "short"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "VALIDATION_FAILED"
        assert body["details"][0]["field"] == "password"

    def test_login_then_profile(self, client, technician):
        resp = client.post("/api/auth/login", json={"email": "tech@example.com", "password": "secret123"})
        assert resp.status_code == 200
        token = resp.json()["data"]["access_token"]

        profile = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
        assert profile.status_code == 200
        assert profile.json()["data"]["email"] == "tech@example.com"
        assert profile.json()["data"]["last_login_at"] is not None

    def test_wrong_password_is_unauthorized(self, client, technician):
        resp = client.post("/api/auth/login", json={"email": "tech@example.com", "password": "nope-nope"})
        assert resp.status_code == 401
        assert resp.json()["code"] == "UNAUTHORIZED"

    def test_refresh_token_issues_new_pair(self, client, technician):
        login = client.post("/api/auth/login", json={"email": "tech@example.com", "password": "secret123"})
        refresh = login.json()["data"]["refresh_token"]

        resp = client.post("/api/auth/refresh", json={"refresh_token": refresh})
        assert resp.status_code == 200
        assert resp.json()["data"]["access_token"]

    def test_refresh_token_is_not_an_access_token(self, client, technician):
        login = client.post("/api/auth/login", json={"email": "tech@example.com", "password": "secret123"})
        refresh = login.json()["data"]["refresh_token"]
        resp = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {refresh}"})
        assert resp.status_code == 401


class TestGuards:
    def test_missing_token(self, client):
        resp = client.get("/api/machines")
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "message": "Not authenticated", "code": "UNAUTHORIZED"}

    def test_garbage_token(self, client):
        resp = client.get("/api/machines", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401

    def test_customer_cannot_create_machine(self, client, customer):
        resp = client.post(
            "/api/machines", json={"machine_code": "X-1", "name": "Press"}, headers=auth_header(customer)
        )
        assert resp.status_code == 403
        assert resp.json()["code"] == "FORBIDDEN"
        assert resp.json()["success"] is False

    def test_technician_cannot_delete_part(self, client, part, tech_headers):
        resp = client.delete(f"/api/machine-parts/{part.id}", headers=tech_headers)
        assert resp.status_code == 403

    def test_customer_can_read_machines(self, client, machine, customer):
        resp = client.get("/api/machines", headers=auth_header(customer))
        assert resp.status_code == 200
        assert resp.json()["pagination"]["total"] == 1


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


class TestRoutingErrors:
    def test_unknown_route_uses_error_envelope(self, client):
        resp = client.get("/api/does-not-exist")
        assert resp.status_code == 404
        assert resp.json() == {"success": False, "message": "Not Found", "code": "NOT_FOUND"}

    def test_wrong_method_uses_error_envelope(self, client):
        resp = client.patch("/health")
        assert resp.status_code == 405
        assert resp.json()["code"] == "METHOD_NOT_ALLOWED"
