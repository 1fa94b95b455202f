from roomlink.health import HealthServer, create_health_app


def test_health_reports_ok_with_timestamp() -> None:
    client = create_health_app().test_client()
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["status"] == "OK"
    assert data["timestamp"].endswith("Z")


def test_cors_origin_header() -> None:
    client = create_health_app(cors_origin="https://chat.example").test_client()
    resp = client.get("/health")
    assert resp.headers["Access-Control-Allow-Origin"] == "https://chat.example"


def test_no_cors_header_without_origin() -> None:
    client = create_health_app(cors_origin=None).test_client()
    resp = client.get("/health")
    assert "Access-Control-Allow-Origin" not in resp.headers


def test_stats_endpoint() -> None:
    client = create_health_app(stats=lambda: {"rooms": {"rooms_total": 2}}).test_client()
    assert client.get("/stats").get_json() == {"rooms": {"rooms_total": 2}}
    assert create_health_app().test_client().get("/stats").get_json() == {}


def test_server_binds_ephemeral_port() -> None:
    server = HealthServer(create_health_app(), "127.0.0.1", 0)
    try:
        server.start()
        assert server.port > 0
    finally:
        server.stop()
