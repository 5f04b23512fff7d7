import unittest

from aiohttp.test_utils import TestClient, TestServer

from otr_gateway.config import GatewayConfig
from otr_gateway.http_routes import create_app


class OtrMessageHttpTests(unittest.IsolatedAsyncioTestCase):
    config = GatewayConfig()

    async def asyncSetUp(self):
        self.app = create_app(self.config)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()
        for user_id, client_id in (("alice", "A1"), ("alice", "A2"), ("bob", "B1")):
            response = await self.client.post(f"/v1/users/{user_id}/clients", json={"client_id": client_id})
            self.assertEqual(response.status, 201)
        response = await self.client.post(
            "/v1/conversations", json={"conv_id": "c1", "creator": "alice", "members": ["bob"]}
        )
        self.assertEqual(response.status, 201)

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def _send(self, recipients, sender="A1", params=None, conv_id="c1"):
        return await self.client.post(
            f"/v1/conversations/{conv_id}/otr/messages",
            json={"sender": sender, "recipients": recipients},
            params=params or {},
        )

    async def test_health(self):
        response = await self.client.get("/healthz")
        self.assertEqual(await response.text(), "ok")

    async def test_exact_recipients_are_delivered(self):
        response = await self._send({"alice": {"A2": "YQ=="}, "bob": {"B1": "Yg=="}})
        self.assertEqual(response.status, 201)
        body = await response.json()
        self.assertEqual(body["missing"], {})
        self.assertEqual(body["redundant"], {})
        self.assertEqual(body["delivered"], 2)

        events = await (await self.client.get("/v1/conversations/c1/events")).json()
        recipients = [event["data"]["recipient"] for event in events["events"]]
        self.assertEqual(recipients, ["A2", "B1"])
        self.assertEqual(events["events"][1]["data"]["text"], "Yg==")
        self.assertEqual(events["events"][1]["type"], "conversation.otr-message-add")

    async def test_missing_client_returns_412(self):
        response = await self._send({"alice": {"A2": "YQ=="}})
        self.assertEqual(response.status, 412)
        body = await response.json()
        self.assertEqual(body, {"missing": {"bob": ["B1"]}, "redundant": {}, "deleted": {}})

        events = await (await self.client.get("/v1/conversations/c1/events")).json()
        self.assertEqual(events["events"], [])

    async def test_deleted_client_reported(self):
        await self.client.post("/v1/users/bob/clients", json={"client_id": "B2"})
        removed = await self.client.delete("/v1/users/bob/clients/B2")
        self.assertEqual(removed.status, 200)

        response = await self._send({"alice": {"A2": "YQ=="}, "bob": {"B1": "Yg==", "B2": "Yw=="}})
        self.assertEqual(response.status, 412)
        body = await response.json()
        self.assertEqual(body["redundant"], {"bob": ["B2"]})
        self.assertEqual(body["deleted"], {"bob": ["B2"]})

    async def test_ignore_missing_delivers_partially(self):
        response = await self._send({"alice": {"A2": "YQ=="}}, params={"ignore_missing": "true"})
        self.assertEqual(response.status, 201)
        body = await response.json()
        self.assertEqual(body["missing"], {"bob": ["B1"]})
        self.assertEqual(body["delivered"], 1)

    async def test_report_missing_limits_mismatch(self):
        await self.client.post("/v1/users/carol/clients", json={"client_id": "C1"})
        await self.client.post("/v1/conversations/c1/members", json={"members": ["carol"]})

        response = await self._send({"alice": {"A2": "YQ=="}, "bob": {"B1": "Yg=="}}, params={"report_missing": "bob"})
        self.assertEqual(response.status, 201)
        self.assertEqual((await response.json())["delivered"], 2)

    async def test_removed_member_is_redundant(self):
        removed = await self.client.delete("/v1/conversations/c1/members/bob")
        self.assertEqual(await removed.json(), {"removed": ["bob"]})

        response = await self._send({"alice": {"A2": "YQ=="}, "bob": {"B1": "Yg=="}})
        self.assertEqual(response.status, 412)
        self.assertEqual((await response.json())["redundant"], {"bob": ["B1"]})

    async def test_entry_list_recipients_are_accepted(self):
        recipients = [
            {"user": "alice", "clients": [{"client": "A2", "text": "YQ=="}]},
            {"user": "bob", "clients": [{"client": "B1", "text": "Yg=="}]},
        ]
        response = await self._send(recipients)
        self.assertEqual(response.status, 201)

    async def test_non_member_sender_forbidden(self):
        await self.client.post("/v1/users/mallory/clients", json={"client_id": "M1"})
        response = await self._send({}, sender="M1")
        self.assertEqual(response.status, 403)

    async def test_unknown_sender_forbidden(self):
        response = await self._send({}, sender="nope")
        self.assertEqual(response.status, 403)

    async def test_unknown_conversation(self):
        response = await self._send({}, conv_id="missing")
        self.assertEqual(response.status, 404)

    async def test_malformed_requests(self):
        bad_json = await self.client.post("/v1/conversations/c1/otr/messages", data="{not json")
        self.assertEqual(bad_json.status, 400)
        bad_recipients = await self._send({"bob": ["B1"]})
        self.assertEqual(bad_recipients.status, 400)
        bad_flag = await self._send({}, params={"ignore_missing": "maybe"})
        self.assertEqual(bad_flag.status, 400)

    async def test_client_listing_hides_removed(self):
        await self.client.delete("/v1/users/alice/clients/A2")
        response = await self.client.get("/v1/users/alice/clients")
        body = await response.json()
        self.assertEqual([client["id"] for client in body["clients"]], ["A1"])

    async def test_non_string_label_rejected(self):
        response = await self.client.post("/v1/users/bob/clients", json={"client_id": "B2", "label": 7})
        self.assertEqual(response.status, 400)
        listing = await (await self.client.get("/v1/users/bob/clients")).json()
        self.assertEqual([client["id"] for client in listing["clients"]], ["B1"])

    async def test_sender_may_address_own_client(self):
        response = await self._send({"alice": {"A1": "eA==", "A2": "YQ=="}, "bob": {"B1": "Yg=="}})
        self.assertEqual(response.status, 201)
        body = await response.json()
        self.assertEqual(body["redundant"], {})
        self.assertEqual(body["delivered"], 2)

    async def test_duplicate_client_conflict(self):
        response = await self.client.post("/v1/users/bob/clients", json={"client_id": "B1"})
        self.assertEqual(response.status, 409)

    async def test_remove_foreign_client_not_found(self):
        response = await self.client.delete("/v1/users/bob/clients/A1")
        self.assertEqual(response.status, 404)


class SelfSyncDisabledHttpTests(OtrMessageHttpTests):
    config = GatewayConfig(self_sync=False)

    async def test_exact_recipients_are_delivered(self):
        response = await self._send({"bob": {"B1": "Yg=="}})
        self.assertEqual(response.status, 201)
        self.assertEqual((await response.json())["delivered"], 1)

    async def test_report_missing_limits_mismatch(self):
        await self.client.post("/v1/users/carol/clients", json={"client_id": "C1"})
        await self.client.post("/v1/conversations/c1/members", json={"members": ["carol"]})

        response = await self._send({"alice": {"A2": "YQ=="}, "bob": {"B1": "Yg=="}}, params={"report_missing": "bob"})
        self.assertEqual(response.status, 201)
        self.assertEqual((await response.json())["delivered"], 1)

    async def test_sender_may_address_own_client(self):
        response = await self._send({"alice": {"A1": "eA==", "A2": "YQ=="}, "bob": {"B1": "Yg=="}})
        self.assertEqual(response.status, 201)
        body = await response.json()
        self.assertEqual(body["redundant"], {})
        self.assertEqual(body["delivered"], 1)

    async def test_ignore_missing_delivers_partially(self):
        response = await self._send({}, params={"ignore_missing": "true"})
        self.assertEqual(response.status, 201)
        self.assertEqual((await response.json())["missing"], {"bob": ["B1"]})


if __name__ == "__main__":
    unittest.main()
