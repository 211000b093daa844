"""Tests for the session router: pairing, forwarding and error reporting."""

import json

from router import NO_PHONE, NO_TABLET, PHONE_SOCKET_MISSING, TABLET_SOCKET_MISSING, UNKNOWN_SESSION


def frame(msg_type, data=None, session_id=None):
    body = {"type": msg_type, "data": data or {}}
    if session_id:
        body["sessionId"] = session_id
    return json.dumps(body)


async def register(router, handle, device_type, device_id):
    await router.handle(handle, frame("register-device", {"deviceType": device_type, "deviceId": device_id}))


async def paired(router, connect):
    """Register phone p1 and tablet t1; returns their (handle, ws) pairs."""
    phone = connect()
    tablet = connect()
    await register(router, phone[0], "phone", "p1")
    await register(router, tablet[0], "tablet", "t1")
    return phone, tablet


READY = {"videoUrl": "https://x/y.webm", "filename": "abc_rec.webm", "deviceId": "p1", "timestamp": 2000}


class TestRegisterDevice:
    async def test_acknowledges_sender(self, router, registry, connect):
        handle, ws = connect()
        await register(router, handle, "phone", "p1")

        assert ws.sent == [{"type": "device-registered", "data": {"success": True, "deviceId": "p1"}}]
        assert (await registry.get("p1")).handle == handle

    async def test_unknown_type_is_refused(self, router, registry, connect):
        handle, ws = connect()
        await register(router, handle, "smartwatch", "w1")

        assert ws.sent[0]["data"] == {"success": False, "deviceId": "w1"}
        assert ws.sent[1]["type"] == "error"
        assert len(registry) == 0

    async def test_empty_device_id_is_refused(self, router, registry, connect):
        handle, ws = connect()
        await register(router, handle, "phone", "")

        assert ws.sent[0] == {"type": "device-registered", "data": {"success": False, "deviceId": ""}}
        assert ws.sent[1] == {"type": "error", "data": {"message": "deviceId must be non-empty"}}
        assert len(registry) == 0


class TestStartRecord:
    async def test_scenario_a_forwards_verbatim(self, router, connect):
        (phone, phone_ws), (tablet, tablet_ws) = await paired(router, connect)
        phone_ws.sent.clear()
        tablet_ws.sent.clear()

        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1000}))

        forwards = phone_ws.of_type("start-record")
        assert len(forwards) == 1
        assert forwards[0]["data"] == {"deviceId": "t1", "timestamp": 1000}
        assert forwards[0]["sessionId"]

        started = tablet_ws.of_type("session-started")
        assert started[0]["data"]["sessionId"] == forwards[0]["sessionId"]
        assert started[0]["data"]["phoneDeviceId"] == "p1"

    async def test_extra_fields_survive_the_forward(self, router, connect):
        (_, phone_ws), (tablet, _) = await paired(router, connect)
        payload = {"deviceId": "t1", "timestamp": 1000, "durationMs": 15000}

        await router.handle(tablet, frame("start-record", payload))

        assert phone_ws.of_type("start-record")[0]["data"] == payload

    async def test_scenario_b_no_phone(self, router, sessions, connect):
        tablet, tablet_ws = connect()
        bystander, bystander_ws = connect()
        await register(router, tablet, "tablet", "t1")
        await register(router, bystander, "tablet", "t2")
        tablet_ws.sent.clear()
        bystander_ws.sent.clear()

        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1000}))

        assert tablet_ws.sent == [{"type": "error", "data": {"message": NO_PHONE}}]
        assert bystander_ws.sent == []
        assert sessions.active_count == 0

    async def test_stale_phone_socket(self, router, gateway, sessions, connect):
        (phone, _), (tablet, tablet_ws) = await paired(router, connect)
        gateway.get(phone).open = False
        tablet_ws.sent.clear()

        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1}))

        assert tablet_ws.sent == [{"type": "error", "data": {"message": PHONE_SOCKET_MISSING}}]
        assert sessions.active_count == 0

    async def test_phone_write_failure_is_stale(self, router, connect):
        phone, _ = connect(fail_sends=True)
        tablet, tablet_ws = connect()
        await register(router, phone, "phone", "p1")
        await register(router, tablet, "tablet", "t1")

        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1}))

        assert tablet_ws.of_type("error")[-1]["data"]["message"] == PHONE_SOCKET_MISSING

    async def test_new_start_supersedes_running_session(self, router, sessions, connect):
        (_, phone_ws), (tablet, tablet_ws) = await paired(router, connect)

        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1}))
        first = phone_ws.of_type("start-record")[0]["sessionId"]
        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 2}))

        ended = tablet_ws.of_type("session-ended")
        assert ended[0]["sessionId"] == first
        assert sessions.active_count == 1

    async def test_failed_start_leaves_running_session(self, router, sessions, connect):
        (_, phone_ws), (tablet, tablet_ws) = await paired(router, connect)
        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1}))
        first = phone_ws.of_type("start-record")[0]["sessionId"]

        phone_ws.fail_sends = True
        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 2}))

        assert tablet_ws.of_type("error")[-1]["data"]["message"] == PHONE_SOCKET_MISSING
        assert tablet_ws.of_type("session-ended") == []
        assert (await sessions.get(first)).active
        assert sessions.active_count == 1

    async def test_unregistered_sender_is_still_served(self, router, connect):
        phone, phone_ws = connect()
        anon, anon_ws = connect()
        await register(router, phone, "phone", "p1")

        await router.handle(anon, frame("start-record", {"deviceId": "kiosk", "timestamp": 3}))

        assert len(phone_ws.of_type("start-record")) == 1
        assert anon_ws.of_type("session-started")


class TestStopRecord:
    async def test_forwards_to_session_phone(self, router, connect):
        (_, phone_ws), (tablet, _) = await paired(router, connect)
        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1}))
        session_id = phone_ws.of_type("start-record")[0]["sessionId"]

        await router.handle(tablet, frame("stop-record", {"deviceId": "t1", "timestamp": 9}, session_id))

        stop = phone_ws.of_type("stop-record")
        assert stop == [{"type": "stop-record", "data": {"deviceId": "t1", "timestamp": 9}, "sessionId": session_id}]

    async def test_legacy_stop_without_session(self, router, connect):
        (_, phone_ws), (tablet, _) = await paired(router, connect)

        await router.handle(tablet, frame("stop-record", {"deviceId": "t1", "timestamp": 9}))

        assert phone_ws.of_type("stop-record")[0]["data"] == {"deviceId": "t1", "timestamp": 9}

    async def test_no_phone_reports_error(self, router, connect):
        tablet, tablet_ws = connect()
        await register(router, tablet, "tablet", "t1")

        await router.handle(tablet, frame("stop-record", {"deviceId": "t1", "timestamp": 9}))

        assert tablet_ws.of_type("error")[0]["data"]["message"] == NO_PHONE

    async def test_unknown_session_rejected(self, router, connect):
        (_, phone_ws), (tablet, tablet_ws) = await paired(router, connect)

        await router.handle(tablet, frame("stop-record", {"deviceId": "t1", "timestamp": 9}, "bogus"))

        assert tablet_ws.of_type("error")[0]["data"]["message"] == UNKNOWN_SESSION
        assert phone_ws.of_type("stop-record") == []

    async def test_non_participant_cannot_stop(self, router, connect):
        (_, phone_ws), (tablet, _) = await paired(router, connect)
        intruder, intruder_ws = connect()
        await register(router, intruder, "tablet", "t9")
        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1}))
        session_id = phone_ws.of_type("start-record")[0]["sessionId"]

        await router.handle(intruder, frame("stop-record", {"deviceId": "t9", "timestamp": 2}, session_id))

        assert intruder_ws.of_type("error")[0]["data"]["message"] == UNKNOWN_SESSION
        assert phone_ws.of_type("stop-record") == []


class TestRecordingReady:
    async def test_scenario_c_delivers_to_tablet(self, router, sessions, connect):
        (phone, phone_ws), (tablet, tablet_ws) = await paired(router, connect)
        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1000}))
        session_id = phone_ws.of_type("start-record")[0]["sessionId"]

        await router.handle(phone, frame("recording-ready", READY, session_id))

        uploaded = tablet_ws.of_type("video-uploaded")
        assert len(uploaded) == 1
        assert uploaded[0]["data"] == READY
        session = await sessions.get(session_id)
        assert session.state.value == "delivered"
        assert session.video_url == READY["videoUrl"]

    async def test_without_token_uses_phones_only_session(self, router, sessions, connect):
        (phone, phone_ws), (tablet, tablet_ws) = await paired(router, connect)
        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1000}))
        session_id = phone_ws.of_type("start-record")[0]["sessionId"]

        await router.handle(phone, frame("recording-ready", READY))

        assert tablet_ws.of_type("video-uploaded")[0]["sessionId"] == session_id
        assert (await sessions.get(session_id)).state.value == "delivered"

    async def test_legacy_delivery_without_any_session(self, router, connect):
        (phone, _), (_, tablet_ws) = await paired(router, connect)

        await router.handle(phone, frame("recording-ready", READY))

        assert tablet_ws.of_type("video-uploaded")[0]["data"] == READY

    async def test_no_tablet_is_reported_to_phone(self, router, connect):
        phone, phone_ws = connect()
        await register(router, phone, "phone", "p1")

        await router.handle(phone, frame("recording-ready", READY))

        assert phone_ws.of_type("error")[0]["data"]["message"] == NO_TABLET

    async def test_stale_tablet_fails_session(self, router, gateway, sessions, connect):
        (phone, phone_ws), (tablet, _) = await paired(router, connect)
        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1000}))
        session_id = phone_ws.of_type("start-record")[0]["sessionId"]
        gateway.get(tablet).open = False

        await router.handle(phone, frame("recording-ready", READY, session_id))

        assert phone_ws.of_type("error")[0]["data"]["message"] == TABLET_SOCKET_MISSING
        session = await sessions.get(session_id)
        assert session.state.value == "error"


class TestDisconnect:
    async def test_scenario_d_phone_drops_mid_session(self, router, gateway, registry, sessions, connect):
        (phone, _), (tablet, tablet_ws) = await paired(router, connect)
        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1}))
        tablet_ws.sent.clear()

        await gateway.disconnect(phone, "network lost")

        assert await registry.get("p1") is None
        assert await registry.get("t1") is not None
        ended = tablet_ws.of_type("session-ended")
        assert ended[0]["data"]["state"] == "error"
        assert ended[0]["data"]["reason"] == "Phone device disconnected"

        tablet_ws.sent.clear()
        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 2}))
        assert tablet_ws.sent == [{"type": "error", "data": {"message": NO_PHONE}}]
        assert sessions.active_count == 0


class TestMisc:
    async def test_ping_pong(self, router, gateway, connect):
        handle, ws = connect()
        gateway.get(handle).last_seen = 0

        await router.handle(handle, frame("ping"))

        assert ws.sent == [{"type": "pong", "data": {}}]
        assert gateway.get(handle).last_seen > 0

    async def test_client_pong_is_accepted_silently(self, router, connect):
        handle, ws = connect()

        await router.handle(handle, frame("pong"))

        assert ws.sent == []

    async def test_quiet_pair_survives_heartbeat(self, router, gateway, connect):
        (phone, phone_ws), (tablet, tablet_ws) = await paired(router, connect)
        gateway.get(phone).last_seen = 0
        gateway.get(tablet).last_seen = 0

        assert await gateway.heartbeat(interval=15) == []
        assert phone_ws.closed_with is None

        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1}))

        assert phone_ws.of_type("start-record")
        assert tablet_ws.of_type("error") == []

    async def test_malformed_frame_keeps_connection(self, router, gateway, connect):
        handle, ws = connect()

        await router.handle(handle, "{not json")

        assert ws.sent[0]["type"] == "error"
        assert ws.sent[0]["data"]["message"].startswith("Invalid message:")
        assert gateway.is_open(handle)

    async def test_expiry_notifies_initiator(self, router, sessions, connect):
        (_, _), (tablet, tablet_ws) = await paired(router, connect)
        await router.handle(tablet, frame("start-record", {"deviceId": "t1", "timestamp": 1}))
        for session in (await sessions.active_for("t1")):
            session.started_at -= 3600

        expired = await router.expire_sessions()

        assert len(expired) == 1
        ended = tablet_ws.of_type("session-ended")
        assert ended[0]["data"]["reason"] == "Recording session timed out"
