import pytest
from datetime import timedelta
from fastapi.testclient import TestClient

from replanner.schemas.reschedule import ProposalStatus

from fixtures import change, json_response, make_proposal, model_answer, status_error


def test_ping(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_delays(client: TestClient):
    r = client.get("/reschedule/schedules/s1/delays")
    assert r.status_code == 200
    delayed = r.json()
    assert delayed[0]["task_id"] == "t1"
    assert delayed[0]["severity"] == "critical"


def test_delays_unknown_schedule(client: TestClient):
    r = client.get("/reschedule/schedules/nope/delays")
    assert r.status_code == 404


def test_propose_then_accept(client: TestClient, fake_openai, schedule_store, today):
    fake_openai.completions.queue(json_response(model_answer(today)))

    r = client.post("/reschedule/schedules/s1/propose", json={"user_id": "u-7"})
    assert r.status_code == 200
    proposal = r.json()
    assert proposal["status"] == "pending"
    assert [c["task_id"] for c in proposal["proposed_changes"]] == ["t1", "t2"]

    r = client.post(f"/reschedule/proposals/{proposal['id']}/accept")
    assert r.status_code == 200
    assert r.json() == {"status": "accepted", "proposal_id": proposal["id"]}
    assert schedule_store.tasks["t1"].end_date == today + timedelta(days=40)

    r = client.post(f"/reschedule/proposals/{proposal['id']}/accept")
    assert r.status_code == 404

    listed = client.get("/reschedule/schedules/s1/proposals").json()
    assert [p["status"] for p in listed] == ["accepted"]


def test_propose_maps_provider_failure_to_502(client: TestClient, fake_openai):
    fake_openai.completions.queue(status_error(429))

    r = client.post("/reschedule/schedules/s1/propose")
    assert r.status_code == 502
    assert r.json()["detail"] == "complete failed: Rate limit exceeded"


def test_propose_unknown_schedule(client: TestClient):
    r = client.post("/reschedule/schedules/nope/propose", json={})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_reject_with_feedback(client: TestClient, proposal_store, today):
    proposal = make_proposal("s1", [change("t1", today, today + timedelta(days=3))])
    await proposal_store.add(proposal)

    r = client.post(f"/reschedule/proposals/{proposal.id}/reject", json={"feedback": "Not now"})
    assert r.status_code == 200

    stored = await proposal_store.get(proposal.id)
    assert stored.status == ProposalStatus.rejected
    assert stored.feedback == "Not now"


@pytest.mark.asyncio
async def test_modify(client: TestClient, proposal_store, schedule_store, today):
    proposal = make_proposal("s1", [change("t1", today, today + timedelta(days=3))])
    await proposal_store.add(proposal)
    body = {
        "modifications": [
            {
                "task_id": "t3",
                "task_name": "Electrical",
                "proposed_start_date": today.isoformat(),
                "proposed_end_date": (today + timedelta(days=9)).isoformat(),
                "reason": "Crew available sooner.",
            }
        ]
    }

    r = client.post(f"/reschedule/proposals/{proposal.id}/modify", json=body)
    assert r.status_code == 200
    assert schedule_store.tasks["t3"].end_date == today + timedelta(days=9)

    r = client.post(f"/reschedule/proposals/{proposal.id}/modify", json=body)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_modify_validation(client: TestClient, proposal_store, today):
    proposal = make_proposal("s1", [])
    await proposal_store.add(proposal)
    backwards = {
        "task_id": "t3",
        "task_name": "Electrical",
        "proposed_start_date": today.isoformat(),
        "proposed_end_date": (today - timedelta(days=1)).isoformat(),
        "reason": "Oops.",
    }
    stranger = {**backwards, "task_id": "t-other", "proposed_end_date": today.isoformat()}

    r = client.post(f"/reschedule/proposals/{proposal.id}/modify", json={"modifications": [backwards]})
    assert r.status_code == 422

    r = client.post(f"/reschedule/proposals/{proposal.id}/modify", json={"modifications": [stranger]})
    assert r.status_code == 422
    assert (await proposal_store.get(proposal.id)).status == ProposalStatus.pending


def test_usage(client: TestClient, fake_openai, today):
    fake_openai.completions.queue(json_response(model_answer(today), prompt_tokens=100, completion_tokens=50))
    client.post("/reschedule/schedules/s1/propose")

    usage = client.get("/reschedule/usage").json()
    assert usage["total_requests"] == 1
    assert usage["total_input_tokens"] == 100
    assert usage["total_output_tokens"] == 50


def test_run_serves_the_app_with_uvicorn(monkeypatch):
    from replanner import main

    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    main.run(port=9000)

    [(target, kwargs)] = calls
    assert target == "replanner.main:app"
    assert kwargs["host"] == "0.0.0.0"
    assert kwargs["port"] == 9000
    assert kwargs["reload"] is False
