"""
Error contract: 404 fallback, stack traces only in development, central logging.
"""

import json

from fastapi.testclient import TestClient

from core.errors import AppError, NotFoundError, UnhandledError, from_http_exception
from main import create_app
from starlette.exceptions import HTTPException as StarletteHTTPException


def _app_with_failing_route(settings):
    app = create_app(settings)

    @app.get("/api/v1/boom")
    async def boom() -> dict:
        raise RuntimeError("boom")

    @app.get("/api/v1/teapot")
    async def teapot() -> dict:
        raise AppError("short and stout", status_code=418)

    return app


def test_unmatched_route_returns_not_found_contract(client: TestClient) -> None:
    r = client.get("/no/such/route")
    assert r.status_code == 404
    assert r.json() == {"status": "error", "statusCode": 404, "message": "Not Found"}


def test_unmatched_route_under_api_prefix(client: TestClient) -> None:
    r = client.delete("/api/v1/nothing-here")
    assert r.json()["statusCode"] == 404


def test_method_not_allowed_keeps_status(client: TestClient) -> None:
    r = client.post("/health")
    assert r.status_code == 405
    assert r.json()["statusCode"] == 405


def test_validation_error_uses_contract(client: TestClient) -> None:
    r = client.post("/api/v1/auth/token", json={})
    assert r.status_code == 422
    data = r.json()
    assert data["status"] == "error"
    assert data["statusCode"] == 422
    assert "username" in data["message"]


def test_unhandled_exception_hides_details_outside_development(settings) -> None:
    with TestClient(_app_with_failing_route(settings)) as c:
        r = c.get("/api/v1/boom")
    assert r.status_code == 500
    data = r.json()
    assert data == {"status": "error", "statusCode": 500, "message": "Internal Server Error"}
    assert "boom" not in r.text


def test_route_raised_app_error_keeps_status(settings) -> None:
    with TestClient(_app_with_failing_route(settings)) as c:
        r = c.get("/api/v1/teapot")
    assert r.status_code == 418
    assert r.json()["message"] == "short and stout"
    assert "stack" not in r.json()


def test_stack_included_in_development(make_settings) -> None:
    settings = make_settings(ENVIRONMENT="development")
    with TestClient(_app_with_failing_route(settings)) as c:
        r = c.get("/api/v1/boom")
        not_found = c.get("/missing")
    data = r.json()
    assert r.status_code == 500
    assert data["message"] == "boom"
    assert "RuntimeError: boom" in data["stack"]
    assert isinstance(not_found.json()["stack"], str)


def test_no_stack_field_in_production_like_modes(make_settings) -> None:
    for env in ("test", "staging"):
        with TestClient(create_app(make_settings(ENVIRONMENT=env))) as c:
            assert "stack" not in c.get("/missing").json()


def test_errors_are_logged(settings, capsys) -> None:
    with TestClient(_app_with_failing_route(settings)) as c:
        c.get("/api/v1/boom")
        c.get("/missing")
    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
    unhandled = [l for l in lines if l["message"] == "unhandled_error"]
    not_found = [l for l in lines if l["message"] == "request_error"]
    assert unhandled and unhandled[0]["level"] == "ERROR"
    assert "RuntimeError: boom" in unhandled[0]["exception"]
    assert not_found and not_found[0]["status_code"] == 404
    assert not_found[0]["error_kind"] == "not_found"


def test_from_http_exception_maps_404_to_not_found() -> None:
    error = from_http_exception(StarletteHTTPException(status_code=404))
    assert isinstance(error, NotFoundError)
    assert error.message == "Not Found"

    other = from_http_exception(StarletteHTTPException(status_code=409, detail="conflict"))
    assert other.status_code == 409
    assert other.message == "conflict"


def test_unhandled_error_wraps_cause() -> None:
    cause = ValueError("bad value")
    assert UnhandledError(cause).message == "Internal Server Error"
    assert UnhandledError(cause, expose_message=True).message == "bad value"
    assert UnhandledError(cause).__cause__ is cause
