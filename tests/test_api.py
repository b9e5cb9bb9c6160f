"""HTTP surface: sharing, delivery actions, manual retries, files and groups."""

import asyncio
import uuid

import pytest
from sqlalchemy import select

from app.models.delivery import DeliveryState, FileDelivery
from app.models.share import FileShare

SHARES = "/api/v1/shares/"
DELIVERIES = "/api/v1/deliveries/"


@pytest.fixture
async def people(create_user, create_file):
    alice = await create_user("alice@example.com", "Alice")
    bob = await create_user("bob@example.com", "Bob")
    carol = await create_user("carol@example.com", "Carol")
    file = await create_file(alice, "f1.pdf")
    return alice, bob, carol, file


@pytest.fixture
def share_with(client, auth_headers):
    async def _share(sender, file, recipients, **extra):
        response = await client.post(
            SHARES,
            json={"file_id": str(file.id), "recipients": recipients, **extra},
            headers=auth_headers(sender),
        )
        assert response.status_code == 201, response.text
        return response.json()
    return _share


@pytest.fixture
def durable_delivery(session_factory):
    async def _load(share_id) -> FileDelivery:
        async with session_factory() as session:
            result = await session.execute(select(FileDelivery).where(FileDelivery.share_id == uuid.UUID(str(share_id))))
            return result.scalar_one()
    return _load


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_requires_a_token(self, client):
        response = await client.get("/api/v1/shares/sent")

        assert response.status_code == 401


class TestCreateShares:
    @pytest.mark.asyncio
    async def test_partial_failure_end_to_end(self, client, auth_headers, people, share_with):
        alice, bob, carol, file = people

        body = await share_with(alice, file, ["bob@example.com", "ghost@example.com"])

        assert body["successful_shares"] == 1
        assert body["failed_shares"] == 1
        assert body["total_recipients"] == 2
        ghost = body["results"][1]
        assert ghost["email"] == "ghost@example.com"
        assert ghost["error_code"] == "NOT_REGISTERED"

        received = await client.get("/api/v1/shares/received", headers=auth_headers(bob))
        assert received.status_code == 200
        assert [s["file"]["filename"] for s in received.json()["shares"]] == ["f1.pdf"]

        anonymous = await client.get(f"{DELIVERIES}retries", params={"user_id": str(bob.id)})
        assert anonymous.status_code == 401

        snooping = await client.get(
            f"{DELIVERIES}retries", params={"user_id": str(bob.id)}, headers=auth_headers(carol),
        )
        assert snooping.status_code == 403

    @pytest.mark.asyncio
    async def test_user_share_is_tracked_and_sent(self, client, auth_headers, people, share_with):
        alice, bob, _, file = people

        body = await share_with(alice, file, ["bob@example.com"])
        result = body["results"][0]

        detail = await client.get(DELIVERIES, params={"share_id": result["share_id"]}, headers=auth_headers(alice))
        assert detail.status_code == 200
        deliveries = detail.json()["deliveries"]
        assert [d["id"] for d in deliveries] == [result["delivery_id"]]
        assert deliveries[0]["status"] == "sent"
        assert deliveries[0]["recipient_email"] == "bob@example.com"

    @pytest.mark.asyncio
    async def test_only_the_owner_can_share(self, client, auth_headers, people):
        alice, bob, _, file = people

        response = await client.post(
            SHARES, json={"file_id": str(file.id), "recipients": ["carol@example.com"]}, headers=auth_headers(bob),
        )

        assert response.status_code == 403
        assert response.json()["error_code"] == "ACCESS_DENIED"

    @pytest.mark.asyncio
    async def test_body_validation(self, client, auth_headers, people):
        alice = people[0]

        response = await client.post(SHARES, json={"recipients": ["bob@example.com"]}, headers=auth_headers(alice))

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_recipients_are_notified(self, client, people, share_with, app_services, socket_factory):
        alice, bob, _, file = people
        socket = socket_factory()
        await app_services["notifier"].connect(bob.id, socket)

        await share_with(alice, file, ["bob@example.com"])

        assert "file-shared" in socket.events()


class TestShareLifecycle:
    @pytest.mark.asyncio
    async def test_revoke_twice(self, client, auth_headers, people, share_with):
        alice, bob, _, file = people
        share_id = (await share_with(alice, file, ["bob@example.com"]))["results"][0]["share_id"]

        first = await client.post(f"{SHARES}{share_id}/revoke", headers=auth_headers(alice))
        second = await client.post(f"{SHARES}{share_id}/revoke", headers=auth_headers(alice))

        assert first.status_code == second.status_code == 200
        assert second.json()["revoked"] is True
        assert second.json()["revoked_at"] == first.json()["revoked_at"]
        received = await client.get("/api/v1/shares/received", headers=auth_headers(bob))
        assert received.json()["shares"] == []

    @pytest.mark.asyncio
    async def test_only_the_creator_may_revoke(self, client, auth_headers, people, share_with):
        """The recipient backs out through reject, not the revoke route"""
        alice, bob, _, file = people
        share_id = (await share_with(alice, file, ["bob@example.com"]))["results"][0]["share_id"]

        response = await client.post(f"{SHARES}{share_id}/revoke", headers=auth_headers(bob))

        assert response.status_code == 403
        received = await client.get("/api/v1/shares/received", headers=auth_headers(bob))
        assert len(received.json()["shares"]) == 1

    @pytest.mark.asyncio
    async def test_access_completes_the_delivery(self, client, auth_headers, people, share_with, durable_delivery):
        alice, bob, _, file = people
        share_id = (await share_with(alice, file, ["bob@example.com"]))["results"][0]["share_id"]

        response = await client.post(
            f"{SHARES}{share_id}/access", json={"event_type": "VIEW"}, headers=auth_headers(bob),
        )

        assert response.status_code == 200
        assert response.json()["access_count"] == 1
        delivery = await durable_delivery(share_id)
        assert delivery.status == DeliveryState.DELIVERED
        assert delivery.delivered_at is not None

    @pytest.mark.asyncio
    async def test_access_limit_over_http(self, client, auth_headers, people, share_with):
        alice, bob, _, file = people
        body = await share_with(alice, file, ["bob@example.com"], max_access_count=1)
        share_id = body["results"][0]["share_id"]

        first = await client.post(f"{SHARES}{share_id}/access", json={}, headers=auth_headers(bob))
        second = await client.post(f"{SHARES}{share_id}/access", json={}, headers=auth_headers(bob))

        assert first.status_code == 200
        assert second.status_code == 403

    @pytest.mark.asyncio
    async def test_reject_revokes(self, client, auth_headers, people, share_with, session_factory):
        alice, bob, carol, file = people
        share_id = (await share_with(alice, file, ["bob@example.com"]))["results"][0]["share_id"]

        outsider = await client.put(
            f"{SHARES}received/{share_id}", json={"action": "reject"}, headers=auth_headers(carol),
        )
        rejected = await client.put(
            f"{SHARES}received/{share_id}", json={"action": "reject"}, headers=auth_headers(bob),
        )

        assert outsider.status_code == 404
        assert rejected.status_code == 200
        async with session_factory() as session:
            share = await session.get(FileShare, uuid.UUID(share_id))
            assert share.revoked

    @pytest.mark.asyncio
    async def test_accept_completes_the_delivery(self, client, auth_headers, people, share_with, durable_delivery):
        alice, bob, _, file = people
        share_id = (await share_with(alice, file, ["bob@example.com"]))["results"][0]["share_id"]

        response = await client.put(
            f"{SHARES}received/{share_id}", json={"action": "accept"}, headers=auth_headers(bob),
        )

        assert response.status_code == 200
        assert (await durable_delivery(share_id)).status == DeliveryState.DELIVERED

    @pytest.mark.asyncio
    async def test_bulk_revoke(self, client, auth_headers, people, share_with):
        alice, _, _, file = people
        body = await share_with(alice, file, ["bob@example.com", "carol@example.com"])
        share_ids = [r["share_id"] for r in body["results"]]

        response = await client.post(
            f"{SHARES}bulk-revoke", json={"share_ids": share_ids}, headers=auth_headers(alice),
        )

        assert response.json() == {"success": True, "revoked_count": 2}
        sent = await client.get(f"{SHARES}sent", headers=auth_headers(alice))
        assert all(s["revoked"] for s in sent.json())


class TestDeliveryActions:
    @pytest.mark.asyncio
    async def test_recipient_walks_the_state_machine(self, client, auth_headers, people, share_with):
        alice, bob, _, file = people
        delivery_id = (await share_with(alice, file, ["bob@example.com"]))["results"][0]["delivery_id"]

        for action, status in [("mark_delivered", "delivered"), ("mark_viewed", "viewed"), ("mark_downloaded", "downloaded")]:
            response = await client.post(
                DELIVERIES, json={"action": action, "delivery_id": delivery_id}, headers=auth_headers(bob),
            )
            assert response.status_code == 200
            assert response.json()["status"] == status

    @pytest.mark.asyncio
    async def test_out_of_order_is_a_conflict(self, client, auth_headers, people, share_with):
        alice, bob, _, file = people
        delivery_id = (await share_with(alice, file, ["bob@example.com"]))["results"][0]["delivery_id"]

        response = await client.post(
            DELIVERIES, json={"action": "mark_viewed", "delivery_id": delivery_id}, headers=auth_headers(bob),
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_bad_requests(self, client, auth_headers, people, share_with):
        alice, bob, carol, file = people
        delivery_id = (await share_with(alice, file, ["bob@example.com"]))["results"][0]["delivery_id"]

        unknown_action = await client.post(DELIVERIES, json={"action": "explode"}, headers=auth_headers(alice))
        missing_id = await client.post(DELIVERIES, json={"action": "mark_delivered"}, headers=auth_headers(alice))
        unknown_id = await client.post(
            DELIVERIES, json={"action": "mark_delivered", "delivery_id": "delivery_nope"}, headers=auth_headers(alice),
        )
        outsider = await client.post(
            DELIVERIES, json={"action": "mark_delivered", "delivery_id": delivery_id}, headers=auth_headers(carol),
        )

        assert unknown_action.status_code == 400
        assert missing_id.status_code == 400
        assert unknown_id.status_code == 404
        assert outsider.status_code == 403

    @pytest.mark.asyncio
    async def test_track_delivery_action(self, client, auth_headers, people, share_with):
        alice, bob, carol, file = people
        share_id = (await share_with(alice, file, ["bob@example.com"]))["results"][0]["share_id"]

        tracked = await client.post(
            DELIVERIES,
            json={"action": "track_delivery", "share_id": share_id, "recipient_email": "carol@example.com"},
            headers=auth_headers(alice),
        )
        not_creator = await client.post(
            DELIVERIES,
            json={"action": "track_delivery", "share_id": share_id, "recipient_email": "carol@example.com"},
            headers=auth_headers(bob),
        )

        assert tracked.status_code == 200
        assert tracked.json()["delivery_id"].startswith("delivery_")
        assert not_creator.status_code == 403

    @pytest.mark.asyncio
    async def test_analytics(self, client, auth_headers, people, share_with):
        alice, bob, _, file = people
        await share_with(alice, file, ["bob@example.com", "carol@example.com"])

        response = await client.get(DELIVERIES, params={"time_range": "24h"}, headers=auth_headers(alice))

        analytics = response.json()["analytics"]
        assert analytics["total_deliveries"] == 2
        assert analytics["by_status"]["sent"] == 2
        assert len(analytics["recent_failures"]) == 2
        assert analytics["failed"] == 0


class TestManualRetry:
    @pytest.mark.asyncio
    async def test_offline_recipient_is_deferred(self, client, auth_headers, people, share_with, durable_delivery):
        alice, _, _, file = people
        share_id = (await share_with(alice, file, ["bob@example.com"]))["results"][0]["share_id"]
        delivery = await durable_delivery(share_id)

        response = await client.post(f"{DELIVERIES}{delivery.id}/retry", headers=auth_headers(alice))

        assert response.status_code == 202
        assert response.json()["will_retry_later"] is True

    @pytest.mark.asyncio
    async def test_online_recipient_is_retried_now(
        self, client, auth_headers, people, share_with, durable_delivery, mark_online, app_services,
    ):
        alice, bob, _, file = people
        share_id = (await share_with(alice, file, ["bob@example.com"]))["results"][0]["share_id"]
        delivery = await durable_delivery(share_id)
        await mark_online(bob)

        response = await client.post(f"{DELIVERIES}{delivery.id}/retry", headers=auth_headers(alice))
        await asyncio.gather(*list(app_services["scheduler"]._single))

        assert response.status_code == 200
        assert response.json()["attempt_number"] == 1
        row = await durable_delivery(share_id)
        assert row.delivery_attempts == 1
        # Marked online but no live socket in the notifier
        assert row.status == DeliveryState.FAILED

    @pytest.mark.asyncio
    async def test_exhausted_and_completed_deliveries(
        self, client, auth_headers, people, share_with, durable_delivery, session_factory,
    ):
        alice, _, carol, file = people
        body = await share_with(alice, file, ["bob@example.com", "carol@example.com"])
        exhausted = await durable_delivery(body["results"][0]["share_id"])
        completed = await durable_delivery(body["results"][1]["share_id"])
        async with session_factory() as session:
            (await session.get(FileDelivery, exhausted.id)).delivery_attempts = 3
            (await session.get(FileDelivery, completed.id)).status = DeliveryState.DELIVERED
            await session.commit()

        over_budget = await client.post(f"{DELIVERIES}{exhausted.id}/retry", headers=auth_headers(alice))
        done = await client.post(f"{DELIVERIES}{completed.id}/retry", headers=auth_headers(alice))
        stranger = await client.post(f"{DELIVERIES}{exhausted.id}/retry", headers=auth_headers(carol))

        assert over_budget.status_code == 409
        assert over_budget.json()["error_code"] == "RETRY_EXHAUSTED"
        assert done.status_code == 400
        assert stranger.status_code == 403

    @pytest.mark.asyncio
    async def test_pending_retries_listing(self, client, auth_headers, people, share_with, mark_online):
        alice, bob, _, file = people
        await share_with(alice, file, ["bob@example.com"])
        await mark_online(bob)

        response = await client.get(f"{DELIVERIES}retries", headers=auth_headers(bob))

        body = response.json()
        assert body["total_pending"] == 1
        assert body["online_recipients"] == 1
        assert body["pending_retries"][0]["can_retry"] is True


class TestFilesAndGroups:
    @pytest.mark.asyncio
    async def test_register_and_read_file(self, client, auth_headers, people, share_with):
        alice, bob, carol, _ = people

        created = await client.post(
            "/api/v1/files/",
            json={"filename": "plan.txt", "size_bytes": 10, "mime_type": "text/plain", "url": "https://cdn/plan.txt"},
            headers=auth_headers(alice),
        )
        assert created.status_code == 201
        file_id = created.json()["id"]

        listed = await client.get("/api/v1/files/", headers=auth_headers(alice))
        assert file_id in [f["id"] for f in listed.json()]

        hidden = await client.get(f"/api/v1/files/{file_id}", headers=auth_headers(bob))
        assert hidden.status_code == 404

        await client.post(
            SHARES, json={"file_id": file_id, "recipients": ["bob@example.com"]}, headers=auth_headers(alice),
        )
        visible = await client.get(f"/api/v1/files/{file_id}", headers=auth_headers(bob))
        assert visible.status_code == 200
        assert visible.json()["original_filename"] == "plan.txt"

    @pytest.mark.asyncio
    async def test_group_share_reaches_members(self, client, auth_headers, people, share_with):
        alice, bob, carol, file = people

        created = await client.post(
            "/api/v1/groups/",
            json={"name": "Design", "member_emails": ["bob@example.com", "ghost@example.com"]},
            headers=auth_headers(alice),
        )
        assert created.status_code == 201
        group = created.json()
        assert group["member_count"] == 2
        assert group["unknown_emails"] == ["ghost@example.com"]

        body = await share_with(alice, file, [], groups=[group["id"]])
        assert body["results"][0]["share_type"] == "GROUP"
        assert "delivery_id" not in body["results"][0]

        bob_inbox = await client.get(f"{SHARES}received", headers=auth_headers(bob))
        carol_inbox = await client.get(f"{SHARES}received", headers=auth_headers(carol))
        assert len(bob_inbox.json()["shares"]) == 1
        assert carol_inbox.json()["shares"] == []

    @pytest.mark.asyncio
    async def test_only_the_creator_adds_members(self, client, auth_headers, people):
        alice, bob, carol, _ = people
        group = (await client.post(
            "/api/v1/groups/", json={"name": "Ops", "member_emails": ["bob@example.com"]}, headers=auth_headers(alice),
        )).json()

        denied = await client.post(
            f"/api/v1/groups/{group['id']}/members", json={"emails": ["carol@example.com"]}, headers=auth_headers(bob),
        )
        added = await client.post(
            f"/api/v1/groups/{group['id']}/members", json={"emails": ["carol@example.com"]}, headers=auth_headers(alice),
        )

        assert denied.status_code == 403
        assert added.json()["added"] == 1
        assert added.json()["member_count"] == 3


class TestPresenceRoute:
    @pytest.mark.asyncio
    async def test_presence_map(self, client, auth_headers, people, mark_online):
        alice, bob, _, _ = people
        await mark_online(bob)

        response = await client.get("/api/v1/presence/", headers=auth_headers(alice))

        assert response.json()["presence"]["bob@example.com"]["is_online"] is True
