# tests/agent/test_client.py
"""
Unit Tests for the policy source HTTP client
requests.Session is replaced by a Mock
"""

from unittest.mock import Mock

import pytest
import requests

from ipsec_manager.agent.client import PolicySourceClient
from ipsec_manager.errors import TransientNetworkError


def make_response(status_code=200, payload=None):
    response = Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.text = "" if payload is None else str(payload)
    response.json.return_value = payload
    return response


@pytest.fixture
def session():
    return Mock(spec=requests.Session)


@pytest.fixture
def client(session):
    return PolicySourceClient("http://cp.example:8080/api/v1/", timeout=5, session=session)


class TestRegister:
    """Tests for register"""

    def test_posts_identity(self, client, session, node):
        session.request.return_value = make_response(201, {"id": "node-1"})

        assert client.register(node) == {"id": "node-1"}

        method, url = session.request.call_args.args
        assert (method, url) == ("POST", "http://cp.example:8080/api/v1/register")
        assert session.request.call_args.kwargs["json"]["tags"] == ["edge", "eu"]
        assert session.request.call_args.kwargs["timeout"] == 5

    def test_connection_error_is_transient(self, client, session, node):
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(TransientNetworkError) as exc_info:
            client.register(node)

        assert exc_info.value.status_code is None

    def test_server_error_is_transient(self, client, session, node):
        session.request.return_value = make_response(500, {"detail": "boom"})

        with pytest.raises(TransientNetworkError) as exc_info:
            client.register(node)

        assert "500" in str(exc_info.value)
        assert exc_info.value.status_code == 500


class TestGetPolicies:
    """Tests for get_policies"""

    def test_parses_policies(self, client, session, make_policy):
        policy = make_policy("p1")
        session.request.return_value = make_response(200, [policy.model_dump(mode="json")])

        assert client.get_policies("node-1") == [policy]
        assert session.request.call_args.kwargs["params"] == {"node": "node-1"}

    def test_skips_malformed_entries(self, client, session, make_policy):
        good = make_policy("good").model_dump(mode="json")
        session.request.return_value = make_response(200, [{"name": "bad", "version": "not-a-number"}, good])

        assert [p.name for p in client.get_policies("node-1")] == ["good"]

    def test_non_list_payload(self, client, session):
        session.request.return_value = make_response(200, {"policies": []})

        with pytest.raises(TransientNetworkError):
            client.get_policies("node-1")

    def test_unknown_node_is_transient(self, client, session):
        session.request.return_value = make_response(404, {"detail": "Node not found"})

        with pytest.raises(TransientNetworkError) as exc_info:
            client.get_policies("node-1")

        assert exc_info.value.status_code == 404


class TestUpdateStatus:
    """Tests for update_status"""

    def test_puts_status(self, client, session):
        session.request.return_value = make_response(200, {"id": "node-1", "status": "offline"})

        client.update_status("node-1", "offline")

        method, url = session.request.call_args.args
        assert (method, url) == ("PUT", "http://cp.example:8080/api/v1/nodes/node-1/status")
        assert session.request.call_args.kwargs["json"] == {"status": "offline"}

    def test_unknown_node_is_transient(self, client, session):
        session.request.return_value = make_response(404, {"detail": "Node not found"})

        with pytest.raises(TransientNetworkError) as exc_info:
            client.update_status("ghost", "offline")

        assert exc_info.value.status_code == 404
