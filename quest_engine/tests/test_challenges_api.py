T0 = "2024-01-01T09:00:00Z"
D1 = "2024-01-02T09:00:00Z"


def _start(client, user_id="alice", **extra):
    res = client.post("/v1/challenges/start", json={"user_id": user_id, "now": T0, **extra})
    assert res.status_code == 200
    return res.json()


def _complete(client, quest_id, value=None, now=D1, user_id="alice", headers=None):
    return client.post(
        f"/v1/challenges/quests/{quest_id}/complete",
        json={"user_id": user_id, "input": value, "now": now},
        headers=headers or {},
    )


def test_start_and_current(client):
    body = _start(client, persona="Vibe Seeker", stage="validation")
    assert body["challenge"]["current_day"] == 0
    assert body["challenge"]["current_stage"] == 1
    assert [e["type"] for e in body["emitted"]] == ["challenge.started"]

    res = client.get("/v1/challenges/current", params={"user_id": "alice", "now": D1})
    assert res.status_code == 200
    current = res.json()
    assert current["challenge"]["current_day"] == 1
    assert current["days_advanced"] == 1
    assert [e["type"] for e in current["emitted"]] == ["challenge.day_unlocked"]
    daily = {q["quest_id"]: q for q in current["quests"]["Daily"]}
    assert daily["recognise_journal"]["locked"] is False
    assert "bonus_validation_calls" in {q["quest_id"] for q in current["quests"]["Bonus"]}


def test_current_without_challenge_is_404(client):
    res = client.get("/v1/challenges/current", params={"user_id": "ghost"})

    assert res.status_code == 404
    assert res.json()["error"]["code"] == "not_found"
    assert res.headers.get("x-request-id")


def test_restart(client):
    _start(client)

    res = client.post("/v1/challenges/restart", json={"user_id": "alice"})

    assert res.json()["closed"] == 1
    assert client.get("/v1/challenges/current", params={"user_id": "alice"}).status_code == 404


def test_complete_quest_then_duplicate(client):
    _start(client)

    ok = _complete(client, "recognise_journal", "Noticed I rush mornings")
    assert ok.status_code == 200
    body = ok.json()
    assert body["accepted"] is True
    assert body["total_points"] == 5
    assert body["completion"]["quest_id"] == "recognise_journal"
    assert "challenge.day_unlocked" in [e["type"] for e in body["emitted"]]

    dup = _complete(client, "recognise_journal", "again")
    assert dup.status_code == 409
    assert dup.json()["error"]["code"] == "already_completed_today"


def test_rejections_map_to_status_codes(client):
    _start(client)

    locked = _complete(client, "recognise_journal", "early", now=T0)
    assert locked.status_code == 403
    assert locked.json()["error"]["code"] == "day_zero_locked"

    missing = _complete(client, "recognise_journal", "   ")
    assert missing.status_code == 400
    assert missing.json()["error"]["code"] == "input_missing"

    gated = _complete(client, "release_daily_challenge")
    assert gated.status_code == 403
    assert gated.json()["error"]["code"] == "feature_gate_not_met"


def test_unknown_quest_and_missing_challenge_are_404(client):
    assert _complete(client, "no_such_quest").status_code == 404

    res = _complete(client, "recognise_journal", "note", user_id="nobody")
    assert res.status_code == 404


def test_collaborator_failure_is_422_with_request_id(client):
    _start(client)

    res = _complete(
        client,
        "reconnect_conversation",
        {"person_type": "customer"},
        headers={"x-request-id": "req-123"},
    )

    assert res.status_code == 422
    error = res.json()["error"]
    assert error["code"] == "collaborator_failure"
    assert error["already_completed"] is False
    assert error["request_id"] == "req-123"
    assert res.headers["x-request-id"] == "req-123"


def test_flow_completion_endpoint(client):
    _start(client)

    linked = client.post("/v1/challenges/flows/skills/complete", json={"user_id": "alice", "now": T0})
    assert linked.status_code == 200
    assert linked.json()["quest_attempted"] is True
    assert linked.json()["completion"]["quest_id"] == "flow_finder_skills"

    gate_only = client.post("/v1/challenges/flows/healing_compass/complete", json={"user_id": "alice", "now": T0})
    assert gate_only.json() == {"flow_id": "healing_compass", "recorded": True, "quest_attempted": False}
    assert _complete(client, "release_daily_challenge").status_code == 200


def test_points_artifacts_and_tabs(client):
    _start(client)
    _complete(client, "recognise_journal", "note")
    _complete(client, "bonus_share_story", "story")

    daily = client.get("/v1/challenges/points", params={"user_id": "alice", "category": "Daily", "now": D1}).json()
    assert daily["total"] == 5
    assert daily["points_today"] == 5

    recognise = client.get(
        "/v1/challenges/points", params={"user_id": "alice", "category": "Daily", "pillar": "Recognise"}
    ).json()
    assert recognise["daily"] == 5

    artifacts = client.get("/v1/challenges/artifacts", params={"user_id": "alice"}).json()
    by_id = {a["artifact_id"]: a for a in artifacts["artifacts"]}
    assert by_id["bonus_crown"]["current_points"] == 20
    assert by_id["bonus_crown"]["points_required"] == 70
    assert by_id["flow_finder_compass"]["points_required"] == 110
    assert artifacts["completed_stages"] == []

    tabs = client.get("/v1/challenges/tabs", params={"user_id": "alice", "category": "Bonus"}).json()
    assert tabs["total_quests"] == 2
    assert tabs["completed_quests"] == 1
    assert tabs["percentage"] == 50


def test_leaderboard_endpoint(client):
    _start(client, "alice")
    _start(client, "bob")
    _complete(client, "bonus_share_story", "story", now=T0)

    res = client.get("/v1/challenges/leaderboard", params={"user_id": "bob", "view": "weekly"})

    board = res.json()
    assert board["scope"] == "weekly"
    assert [e["name"] for e in board["entries"]] == ["Alice", "Bob"]
    assert board["user_rank"] == 2


def test_reconcile_endpoint(client):
    _start(client)
    _complete(client, "recognise_journal", "note")

    report = client.get("/v1/challenges/reconcile", params={"user_id": "alice"}).json()

    assert report["consistent"] is True
    assert report["expected_total"] == 5
    assert report["pillar_drift"] == {}


def test_healthz_and_readyz(client):
    assert client.get("/healthz").json() == {"status": "ok"}

    ready = client.get("/readyz").json()
    assert ready["status"] == "ok"
    assert ready["store"] == "memory"
    assert ready["quests"] == 18
