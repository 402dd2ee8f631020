import json

from .utils import QUOTA_KEY, capture, envelope

ARCHIVE = [capture("calm", f"2024-01-0{day}T08:00:00Z", tags=["walk"]) for day in range(1, 6)]


def post(service, body, headers=None):
    return service.client.post(
        "/generate-observed-patterns",
        content=json.dumps(body),
        headers=service.headers if headers is None else headers,
    )


def test_observed_patterns_succeed_and_count_quota(service):
    service.reply = envelope('{"text": "A rhythm emerges around quiet mornings."}')
    response = post(service, {"captures": ARCHIVE, "generationNumber": 2, "previousPatternText": "Calm recurs."})

    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "text": "A rhythm emerges around quiet mornings.",
        "requestId": response.headers["X-Request-ID"],
    }
    assert service.redis.get(QUOTA_KEY) == "1"
    assert "- Most frequent moods: calm (5)" in service.prompts[0]
    assert "This is generation 2." in service.prompts[0]


def test_fewer_than_five_captures_is_rejected(service):
    response = post(service, {"captures": ARCHIVE[:4]})
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["stage"] == "validation"
    assert error["message"] == "At least 5 eligible captures are required"
    assert service.prompts == []


def test_captures_are_validated_like_insights(service):
    broken = ARCHIVE[:4] + [capture("calm", "2024-01-06T08:00:00Z", date="06/01/2024")]
    response = post(service, {"captures": broken})
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "capture 4 invalid date"


def test_observed_patterns_need_a_token(service):
    response = post(service, {"captures": ARCHIVE}, headers={})
    assert response.status_code == 401
    assert response.json()["error"]["stage"] == "auth"
    assert service.prompts == []


def test_observed_patterns_respect_the_daily_limit(service):
    service.redis.set(QUOTA_KEY, 3)
    response = post(service, {"captures": ARCHIVE})
    assert response.status_code == 429
    assert service.prompts == []


def test_observed_patterns_preflight(service):
    response = service.client.options("/generate-observed-patterns")
    assert response.status_code == 204
    assert response.headers["X-Request-ID"]
