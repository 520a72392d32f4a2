"""
Tests for version history: snapshots, diffs, restore and retention.
"""
import pytest
from httpx import AsyncClient

from app.core.config import Settings
from app.db.database import async_session
from app.db.enums import VersionSource
from app.realtime.session import DocumentSession
from app.services.versions import create_version, list_versions, unified_diff


async def create_doc(client, token, content="line one\n"):
    response = await client.post(
        "/api/documents/",
        json={"title": "Notes", "content": content},
        headers={"Authorization": f"Bearer {token}"},
    )
    return response.json()


async def snapshot(client, token, document_id, label=None):
    response = await client.post(
        f"/api/versions/document/{document_id}",
        json={"label": label},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 201
    return response.json()


@pytest.mark.anyio
async def test_manual_snapshot_and_history(client: AsyncClient, make_user, headers, realtime, events):
    user, token = await make_user("alice")
    doc = await create_doc(client, token)

    first = await snapshot(client, token, doc["id"], label="draft")
    await client.patch(f"/api/documents/{doc['id']}", json={"content": "line two\n"}, headers=headers(token))
    second = await snapshot(client, token, doc["id"])

    assert first["version_number"] == 1
    assert first["label"] == "draft"
    assert first["source"] == "manual"
    assert first["created_by_id"] == user.id
    assert second["version_number"] == 2
    assert second["revision"] == 1

    history = (await client.get(f"/api/versions/document/{doc['id']}", headers=headers(token))).json()
    assert [v["version_number"] for v in history] == [2, 1]
    assert "content" not in history[0]

    created = events(realtime.sio.emit, "version:created")
    assert [payload["version_number"] for payload, _ in created] == [1, 2]


@pytest.mark.anyio
async def test_get_version_with_content(client: AsyncClient, make_user, headers):
    _, token = await make_user("alice")
    doc = await create_doc(client, token, content="abc")
    version = await snapshot(client, token, doc["id"])

    response = await client.get(f"/api/versions/{version['id']}", headers=headers(token))
    assert response.status_code == 200
    assert response.json()["content"] == "abc"


@pytest.mark.anyio
async def test_missing_version(client: AsyncClient, make_user, headers):
    _, token = await make_user("alice")
    response = await client.get("/api/versions/999", headers=headers(token))
    assert response.status_code == 404
    assert response.json() == {"status": "error", "message": "Version not found"}


@pytest.mark.anyio
async def test_viewer_cannot_snapshot(client: AsyncClient, make_user, headers):
    _, alice = await make_user("alice")
    _, bob = await make_user("bob")
    doc = await create_doc(client, alice)
    await client.post(
        f"/api/documents/{doc['id']}/collaborators",
        json={"username": "bob", "role": "viewer"},
        headers=headers(alice),
    )

    response = await client.post(f"/api/versions/document/{doc['id']}", json={}, headers=headers(bob))
    assert response.status_code == 403

    history = await client.get(f"/api/versions/document/{doc['id']}", headers=headers(bob))
    assert history.status_code == 200


@pytest.mark.anyio
async def test_snapshot_of_live_session(client: AsyncClient, make_user, headers, realtime):
    _, token = await make_user("alice")
    doc = await create_doc(client, token, content="old")
    session = DocumentSession(document_id=doc["id"], title="Notes", content="old", version=0)
    realtime.sessions._sessions[doc["id"]] = session
    await session.replace("live text", user_id=None)

    version = await snapshot(client, token, doc["id"])

    assert version["revision"] == 1
    detail = (await client.get(f"/api/versions/{version['id']}", headers=headers(token))).json()
    assert detail["content"] == "live text"
    assert session.ops_since_snapshot == 0


class TestDiff:
    @pytest.mark.anyio
    async def test_against_current_content(self, client: AsyncClient, make_user, headers):
        _, token = await make_user("alice")
        doc = await create_doc(client, token, content="one\ntwo\n")
        version = await snapshot(client, token, doc["id"])
        await client.patch(f"/api/documents/{doc['id']}", json={"content": "one\nthree\n"}, headers=headers(token))

        response = await client.get(f"/api/versions/{version['id']}/diff", headers=headers(token))

        assert response.status_code == 200
        diff = response.json()["diff"]
        assert "--- version 1" in diff
        assert "+++ current" in diff
        assert "-two" in diff
        assert "+three" in diff

    @pytest.mark.anyio
    async def test_against_other_version(self, client: AsyncClient, make_user, headers):
        _, token = await make_user("alice")
        doc = await create_doc(client, token, content="a\n")
        first = await snapshot(client, token, doc["id"])
        await client.patch(f"/api/documents/{doc['id']}", json={"content": "b\n"}, headers=headers(token))
        second = await snapshot(client, token, doc["id"])

        response = await client.get(
            f"/api/versions/{first['id']}/diff", params={"against": second["id"]}, headers=headers(token)
        )
        data = response.json()
        assert data["against"] == second["id"]
        assert "+++ version 2" in data["diff"]

    @pytest.mark.anyio
    async def test_versions_of_different_documents(self, client: AsyncClient, make_user, headers):
        _, token = await make_user("alice")
        one = await snapshot(client, token, (await create_doc(client, token))["id"])
        two = await snapshot(client, token, (await create_doc(client, token))["id"])

        response = await client.get(
            f"/api/versions/{one['id']}/diff", params={"against": two["id"]}, headers=headers(token)
        )
        assert response.status_code == 400

    def test_identical_content_has_empty_diff(self):
        assert unified_diff("same\n", "same\n", "a", "b") == ""


class TestRestore:
    @pytest.mark.anyio
    async def test_restore_without_session(self, client: AsyncClient, make_user, headers):
        _, token = await make_user("alice")
        doc = await create_doc(client, token, content="original")
        version = await snapshot(client, token, doc["id"])
        await client.patch(f"/api/documents/{doc['id']}", json={"content": "changed"}, headers=headers(token))

        response = await client.post(f"/api/versions/{version['id']}/restore", headers=headers(token))

        assert response.status_code == 200
        data = response.json()
        assert data["restored_from"] == 1
        assert data["revision"] == 2
        assert data["version"]["source"] == "restore"
        assert data["version"]["label"] == "Restored from version 1"

        current = (await client.get(f"/api/documents/{doc['id']}", headers=headers(token))).json()
        assert current["content"] == "original"

    @pytest.mark.anyio
    async def test_restore_into_live_session(self, client: AsyncClient, make_user, headers, realtime, events):
        _, token = await make_user("alice")
        doc = await create_doc(client, token, content="original")
        version = await snapshot(client, token, doc["id"])
        session = DocumentSession(document_id=doc["id"], title="Notes", content="edited live", version=1)
        session.dirty = True
        realtime.sessions._sessions[doc["id"]] = session

        response = await client.post(f"/api/versions/{version['id']}/restore", headers=headers(token))

        assert response.status_code == 200
        assert session.content == "original"
        assert response.json()["revision"] == session.version == 2
        operations = events(realtime.sio.emit, "document:operation")
        assert operations[-1][0]["version"] == 2

    @pytest.mark.anyio
    async def test_viewer_cannot_restore(self, client: AsyncClient, make_user, headers):
        _, alice = await make_user("alice")
        _, bob = await make_user("bob")
        doc = await create_doc(client, alice)
        version = await snapshot(client, alice, doc["id"])
        await client.post(
            f"/api/documents/{doc['id']}/collaborators",
            json={"username": "bob", "role": "viewer"},
            headers=headers(alice),
        )

        response = await client.post(f"/api/versions/{version['id']}/restore", headers=headers(bob))
        assert response.status_code == 403


@pytest.mark.anyio
async def test_delete_version(client: AsyncClient, make_user, headers):
    _, token = await make_user("alice")
    doc = await create_doc(client, token)
    version = await snapshot(client, token, doc["id"])

    response = await client.delete(f"/api/versions/{version['id']}", headers=headers(token))
    assert response.status_code == 204
    response = await client.get(f"/api/versions/{version['id']}", headers=headers(token))
    assert response.status_code == 404


@pytest.mark.anyio
async def test_retention_prunes_only_autosaves(test_session, make_user):
    user, _ = await make_user("alice")
    from app.services.documents import create_document

    document = await create_document(test_session, user.id, "Notes")
    await create_version(test_session, document.id, "Notes", "m", 0, VersionSource.manual, user.id)
    for i in range(4):
        await create_version(
            test_session, document.id, "Notes", str(i), i + 1, VersionSource.autosave, None, max_versions=3
        )
    await test_session.commit()

    versions = await list_versions(test_session, document.id)
    assert len(versions) == 3
    assert [v.source for v in versions].count(VersionSource.manual) == 1
    # Oldest autosaves went first
    assert [v.version_number for v in versions] == [5, 4, 1]


@pytest.mark.anyio
async def test_snapshot_uses_hub_retention(client: AsyncClient, make_user, headers, realtime, monkeypatch):
    _, token = await make_user("alice")
    doc = await create_doc(client, token)
    async with async_session() as db:
        for revision in (1, 2):
            await create_version(db, doc["id"], "Notes", "x", revision, VersionSource.autosave, None)
        await db.commit()
    monkeypatch.setattr(realtime, "settings", Settings(_env_file=None, MAX_VERSIONS_PER_DOCUMENT=2))

    await snapshot(client, token, doc["id"])

    history = (await client.get(f"/api/versions/document/{doc['id']}", headers=headers(token))).json()
    assert [(v["version_number"], v["source"]) for v in history] == [(3, "manual"), (2, "autosave")]
