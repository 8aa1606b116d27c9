"""Route tests for /sessions."""

import uuid

import pytest


@pytest.mark.asyncio
async def test_create_and_read_session(client):
    created = await client.post("/sessions", json={"formId": "test-drive"})

    assert created.status_code == 200
    body = created.json()
    assert body["formId"] == "test-drive"
    assert body["contextId"] == f"test-drive:{body['sessionId']}"

    fetched = await client.get(f"/sessions/{body['sessionId']}")
    assert fetched.status_code == 200
    assert fetched.json()["formData"] == {}


@pytest.mark.asyncio
async def test_create_with_existing_session_id_reuses_it(client):
    session_id = str(uuid.uuid4())

    first = await client.post("/sessions", json={"formId": "test-drive", "sessionId": session_id})
    await client.put(f"/sessions/{session_id}", json={"formData": {"email": "a@example.com"}})
    second = await client.post("/sessions", json={"formId": "test-drive", "sessionId": session_id})

    assert first.json()["sessionId"] == session_id
    assert second.json()["sessionId"] == session_id
    fetched = await client.get(f"/sessions/{session_id}")
    assert fetched.json()["formData"] == {"email": "a@example.com"}


@pytest.mark.asyncio
async def test_create_rejects_non_uuid_session_id(client):
    response = await client.post("/sessions", json={"formId": "test-drive", "sessionId": "abc"})

    assert response.status_code == 400
    assert response.json()["error"]["type"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_update_merges_form_data_and_agent_context(client):
    session_id = (await client.post("/sessions", json={"formId": "test-drive"})).json()["sessionId"]

    await client.put(f"/sessions/{session_id}", json={"formData": {"firstName": "Jane"}})
    response = await client.put(
        f"/sessions/{session_id}",
        json={"formData": {"lastName": "Doe"}, "agentContext": {"step": 2}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["formData"] == {"firstName": "Jane", "lastName": "Doe"}
    assert body["agentContext"] == {"step": 2}


@pytest.mark.asyncio
async def test_get_by_context_id(client):
    created = (await client.post("/sessions", json={"formId": "test-drive"})).json()

    response = await client.get(f"/sessions/context/{created['contextId']}")

    assert response.status_code == 200
    assert response.json()["sessionId"] == created["sessionId"]


@pytest.mark.asyncio
async def test_get_by_context_id_with_wrong_form_is_404(client):
    created = (await client.post("/sessions", json={"formId": "test-drive"})).json()

    response = await client.get(f"/sessions/context/contact-form:{created['sessionId']}")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_session(client):
    session_id = (await client.post("/sessions", json={"formId": "test-drive"})).json()["sessionId"]

    deleted = await client.delete(f"/sessions/{session_id}")
    missing = await client.get(f"/sessions/{session_id}")

    assert deleted.status_code == 204
    assert missing.status_code == 404
    assert missing.json()["error"]["type"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_invalid_session_id_is_400(client):
    response = await client.get("/sessions/not-a-uuid")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unknown_session_is_404(client):
    response = await client.put(f"/sessions/{uuid.uuid4()}", json={"formData": {"a": 1}})

    assert response.status_code == 404
