# tests/control_plane/test_api.py
"""
Integration Tests for the control plane REST API
FastAPI TestClient over an in-memory SQLite database
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ipsec_manager.control_plane.config import settings
from ipsec_manager.control_plane.database.models import AuditLog, Base
from ipsec_manager.control_plane.database.session import get_db
from ipsec_manager.control_plane.main import app
from ipsec_manager.ipsec.models import AuthMethod


@pytest.fixture
def db_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def api(db_session_factory):
    def override_get_db():
        db = db_session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def policy_body(make_policy, make_tunnel):
    def factory(name="site-policy", **overrides):
        overrides.setdefault("tunnels", [make_tunnel("site-a")])
        policy = make_policy(name, **overrides)
        body = policy.model_dump(mode="json")
        body.pop("id")
        return body
    return factory


def register(api, node_id="node-1", tags=("edge",)):
    response = api.post("/api/v1/register", json={"id": node_id, "hostname": f"{node_id}.example", "tags": list(tags)})
    assert response.status_code == 201
    return response.json()


class TestHealth:
    def test_health(self, api):
        response = api.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestRegistration:
    """Tests for POST /register and the node endpoints"""

    def test_register_node(self, api):
        node = register(api)

        assert node["id"] == "node-1"
        assert api.get("/api/v1/nodes/node-1").json()["tags"] == ["edge"]

    def test_reregister_updates_tags(self, api):
        register(api, tags=["edge"])
        register(api, tags=["core"])

        nodes = api.get("/api/v1/nodes").json()
        assert len(nodes) == 1
        assert nodes[0]["tags"] == ["core"]

    def test_register_requires_id(self, api):
        assert api.post("/api/v1/register", json={"id": ""}).status_code == 400

    def test_unknown_node(self, api):
        assert api.get("/api/v1/nodes/ghost").status_code == 404

    def test_registration_is_audited(self, api, db_session_factory):
        register(api)

        db = db_session_factory()
        try:
            entries = db.query(AuditLog).all()
        finally:
            db.close()
        assert [(e.action, e.resource_type, e.resource_id) for e in entries] == [("register", "node", "node-1")]


class TestPolicyCrud:
    """Tests for the policy CRUD endpoints"""

    def test_create_and_get(self, api, policy_body):
        response = api.post("/api/v1/policies", json=policy_body())

        assert response.status_code == 201
        created = response.json()
        assert created["id"]
        assert created["version"] == 1
        assert created["tunnels"][0]["name"] == "site-a"

        fetched = api.get(f"/api/v1/policies/{created['id']}").json()
        assert fetched == created

    def test_invalid_policy_rejected_with_detail(self, api, policy_body, make_tunnel):
        """Test a short PSK is reported with group, index and field"""
        body = policy_body(tunnels=[make_tunnel("ok"), make_tunnel("weak", auth=AuthMethod(type="psk", secret="abcde"))])

        response = api.post("/api/v1/policies", json=body)

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["group"] == "security"
        assert detail["tunnel_index"] == 1
        assert detail["tunnel_name"] == "weak"
        assert detail["field"] == "auth.secret"
        assert api.get("/api/v1/policies").json() == []

    def test_duplicate_name_conflicts(self, api, policy_body):
        api.post("/api/v1/policies", json=policy_body("dup"))

        assert api.post("/api/v1/policies", json=policy_body("dup")).status_code == 409

    def test_update_bumps_version(self, api, policy_body):
        created = api.post("/api/v1/policies", json=policy_body(priority=1)).json()

        response = api.put(f"/api/v1/policies/{created['id']}", json=policy_body(priority=50))

        assert response.status_code == 200
        assert response.json()["version"] == 2
        assert response.json()["priority"] == 50
        assert response.json()["id"] == created["id"]

    def test_update_missing(self, api, policy_body):
        assert api.put("/api/v1/policies/nope", json=policy_body()).status_code == 404

    def test_update_to_existing_name_conflicts(self, api, policy_body):
        api.post("/api/v1/policies", json=policy_body("first"))
        second = api.post("/api/v1/policies", json=policy_body("second")).json()

        assert api.put(f"/api/v1/policies/{second['id']}", json=policy_body("first")).status_code == 409

    def test_delete(self, api, policy_body):
        created = api.post("/api/v1/policies", json=policy_body()).json()

        assert api.delete(f"/api/v1/policies/{created['id']}").status_code == 200
        assert api.get(f"/api/v1/policies/{created['id']}").status_code == 404
        assert api.delete(f"/api/v1/policies/{created['id']}").status_code == 404

    def test_list_enabled_filter(self, api, policy_body):
        api.post("/api/v1/policies", json=policy_body("on"))
        api.post("/api/v1/policies", json=policy_body("off", enabled=False))

        assert [p["name"] for p in api.get("/api/v1/policies", params={"enabled": "true"}).json()] == ["on"]
        assert [p["name"] for p in api.get("/api/v1/policies", params={"enabled": "false"}).json()] == ["off"]
        assert len(api.get("/api/v1/policies").json()) == 2

    def test_template(self, api):
        response = api.get("/api/v1/policies/template")

        assert response.status_code == 200
        assert response.json()["name"] == "default-policy"


class TestPoliciesForNode:
    """Tests for GET /policies?node=<id>"""

    def test_filters_by_target_and_priority(self, api, policy_body):
        register(api, "node-1", tags=["edge"])
        api.post("/api/v1/policies", json=policy_body("broadcast", priority=1))
        api.post("/api/v1/policies", json=policy_body("edge-only", priority=10, targets=["edge"]))
        api.post("/api/v1/policies", json=policy_body("core-only", targets=["core"]))
        api.post("/api/v1/policies", json=policy_body("disabled", enabled=False))

        response = api.get("/api/v1/policies", params={"node": "node-1"})

        assert response.status_code == 200
        assert [p["name"] for p in response.json()] == ["edge-only", "broadcast"]

    def test_unknown_node_is_404(self, api):
        assert api.get("/api/v1/policies", params={"node": "ghost"}).status_code == 404


class TestNodeStatus:
    """Tests for node status reporting"""

    def test_registered_node_is_online(self, api):
        register(api)

        node = api.get("/api/v1/nodes").json()[0]
        assert node["status"] == "online"
        assert node["registered_at"] is not None
        assert node["last_seen_at"] is not None

    def test_report_offline(self, api):
        register(api)

        response = api.put("/api/v1/nodes/node-1/status", json={"status": "offline"})

        assert response.status_code == 200
        assert response.json()["status"] == "offline"
        assert api.get("/api/v1/nodes/node-1").json()["status"] == "offline"

    def test_report_error(self, api):
        register(api)
        api.put("/api/v1/nodes/node-1/status", json={"status": "error"})

        assert api.get("/api/v1/nodes").json()[0]["status"] == "error"

    def test_status_change_is_audited(self, api, db_session_factory):
        register(api)
        api.put("/api/v1/nodes/node-1/status", json={"status": "offline"})

        db = db_session_factory()
        try:
            actions = [e.action for e in db.query(AuditLog).order_by(AuditLog.id).all()]
        finally:
            db.close()
        assert actions == ["register", "status"]

    def test_unknown_node(self, api):
        response = api.put("/api/v1/nodes/ghost/status", json={"status": "offline"})

        assert response.status_code == 404

    def test_invalid_status(self, api):
        register(api)

        response = api.put("/api/v1/nodes/node-1/status", json={"status": "sleeping"})

        assert response.status_code == 422

    def test_reregister_brings_node_back_online(self, api):
        register(api)
        api.put("/api/v1/nodes/node-1/status", json={"status": "offline"})

        register(api)

        assert api.get("/api/v1/nodes/node-1").json()["status"] == "online"

    def test_policy_fetch_marks_node_online(self, api):
        register(api)
        api.put("/api/v1/nodes/node-1/status", json={"status": "error"})

        api.get("/api/v1/policies", params={"node": "node-1"})

        assert api.get("/api/v1/nodes/node-1").json()["status"] == "online"


class TestAdminToken:
    """Tests for the optional admin token on write endpoints"""

    @pytest.fixture(autouse=True)
    def admin_secret(self, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_SECRET", "t0ps3cret")

    def test_write_without_token_rejected(self, api, policy_body):
        assert api.post("/api/v1/policies", json=policy_body()).status_code == 401

    def test_write_with_token(self, api, policy_body):
        response = api.post("/api/v1/policies", json=policy_body(), headers={"X-Admin-Token": "t0ps3cret"})

        assert response.status_code == 201

    def test_reads_stay_open(self, api):
        assert api.get("/api/v1/policies").status_code == 200
