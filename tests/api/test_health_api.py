from __future__ import annotations


def test_health_reports_store_and_hub(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["data"]["status"] == "ok"
    assert body["data"]["store"]["ok"] is True
    assert body["data"]["scheduler"]["running"] is False
    assert "observers" in body["data"]["hub"]


def test_health_is_503_when_the_store_is_gone(app, client):
    app.config["POOL"].close()
    response = client.get("/health")
    assert response.status_code == 503
    assert response.get_json()["error"] == "service_unavailable"


def test_metrics_include_pool_state(client):
    response = client.get("/api/v1/metrics")
    assert response.status_code == 200
    assert "in_use" in response.get_json()["data"]["pool"]


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-Id": "trace-123"})
    assert response.headers["X-Request-Id"] == "trace-123"
    assert client.get("/health").headers["X-Request-Id"]


def test_unknown_route_uses_the_error_envelope(client):
    response = client.get("/api/v1/nothing-here")
    assert response.status_code == 404
    body = response.get_json()
    assert body["success"] is False
    assert body["error"] == "not_found"
    assert body["message"]


def test_wrong_method_is_invalid_argument(client):
    response = client.delete("/api/v1/metrics")
    assert response.status_code == 405
    assert response.get_json()["error"] == "invalid_argument"


def test_cors_headers_on_api_routes(client):
    response = client.get("/api/v1/metrics", headers={"Origin": "http://localhost:3000"})
    assert response.headers["Access-Control-Allow-Origin"] == "*"


def test_cors_preflight_allows_any_origin(client):
    response = client.options(
        "/api/v1/metrics",
        headers={"Origin": "https://media.example", "Access-Control-Request-Method": "GET"},
    )
    assert response.headers["Access-Control-Allow-Origin"] == "*"


def test_prometheus_metrics_export(app, client):
    app.config["METRICS"].record_job(True, "scrape_thread")
    app.config["METRICS"].record_page_fetch(retries=2)

    response = client.get("/api/v1/metrics/prometheus")
    assert response.status_code == 200
    assert response.mimetype == "text/plain"
    text = response.get_data(as_text=True)
    assert "mediavault_jobs_succeeded 1.0" in text
    assert "mediavault_jobs_by_kind_scrape_thread_succeeded 1.0" in text
    assert "mediavault_fetch_retries 2.0" in text
    assert "mediavault_pages_fetched 1.0" in text
    assert "mediavault_pool_max_open " in text
