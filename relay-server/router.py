"""Session router: binds tablet commands to the phone and recordings back to the tablet.

Protocol (client -> server):
- {type: "register-device", data: {deviceType, deviceId}}
- {type: "start-record", data: {deviceId, timestamp}}
- {type: "stop-record", data: {deviceId, timestamp}, sessionId?}
- {type: "recording-ready", data: {videoUrl, filename, deviceId, timestamp}, sessionId?}
- {type: "ping"}, {type: "pong"} (answer to a server heartbeat ping)

Protocol (server -> client):
- device-registered, start-record, stop-record, video-uploaded,
  session-started, session-ended, error, ping, pong
"""

import logging
from typing import Optional, Union

import messages
from gateway import ConnectionGateway, StaleConnectionError
from registry import Device, DeviceRegistry, DeviceType
from sessions import InvalidTransition, Session, SessionTracker

logger = logging.getLogger("relay.router")

NO_PHONE = "No phone device connected"
PHONE_SOCKET_MISSING = "Phone device socket not found"
NO_TABLET = "No tablet device connected"
TABLET_SOCKET_MISSING = "Tablet device socket not found"
UNKNOWN_SESSION = "Unknown session"


class RouteFailure(Exception):
    """A forward could not be delivered; message is client-facing."""


class SessionRouter:
    def __init__(self, registry: DeviceRegistry, gateway: ConnectionGateway, sessions: SessionTracker):
        self.registry = registry
        self.gateway = gateway
        self.sessions = sessions
        gateway.set_disconnect_handler(self.handle_disconnect)
        self._handlers = {
            messages.REGISTER_DEVICE: self._register_device,
            messages.START_RECORD: self._start_record,
            messages.STOP_RECORD: self._stop_record,
            messages.RECORDING_READY: self._recording_ready,
            messages.PING: self._ping,
            messages.PONG: self._pong,
        }

    async def handle(self, handle: str, raw: Union[str, bytes]):
        """Process one inbound frame from a connection.

        Failures are confined to this frame; the connection stays usable.
        """
        self.gateway.touch(handle)
        try:
            msg = messages.parse(raw)
        except messages.InvalidMessage as e:
            logger.warning(f"Rejected frame from {handle}: {e}")
            await self._reply_error(handle, f"Invalid message: {e}")
            return

        try:
            await self._handlers[msg.type](handle, msg)
        except Exception:
            logger.exception(f"Unhandled error routing {msg.type} from {handle}")
            await self._reply_error(handle, "Internal server error", msg.session_id)

    # --- Handlers ---

    async def _ping(self, handle: str, msg: messages.Inbound):
        await self._safe_send(handle, messages.PONG)

    async def _pong(self, handle: str, msg: messages.Inbound):
        pass  # answer to our heartbeat ping; touch() already recorded it

    async def _register_device(self, handle: str, msg: messages.Inbound):
        payload: messages.RegisterDevice = msg.payload
        try:
            await self.registry.register(payload.device_id, payload.device_type, handle)
        except ValueError as e:
            logger.warning(f"Registration from {handle} refused: {e}")
            await self._safe_send(handle, messages.DEVICE_REGISTERED, {
                "success": False,
                "deviceId": payload.device_id,
            })
            await self._reply_error(handle, str(e))
            return

        await self._safe_send(handle, messages.DEVICE_REGISTERED, {
            "success": True,
            "deviceId": payload.device_id,
        })

    async def _start_record(self, handle: str, msg: messages.Inbound):
        sender_id = await self._sender_id(handle, msg)
        logger.info(f"Start record from {sender_id} ({handle}) at {msg.payload.timestamp}")

        phone = await self.registry.find_by_type(DeviceType.PHONE)
        if phone is None:
            logger.warning(f"{NO_PHONE} (requested by {sender_id}, {len(self.registry)} devices registered)")
            await self._reply_error(handle, NO_PHONE)
            return

        running = await self.sessions.active_for(phone.device_id)
        session = await self.sessions.open(sender_id, phone.device_id, initiator_handle=handle)
        try:
            await self._forward(phone, messages.START_RECORD, msg.data, session.session_id, PHONE_SOCKET_MISSING)
        except RouteFailure as e:
            await self.sessions.discard(session.session_id)
            await self._reply_error(handle, str(e))
            return

        # A phone records one session at a time; the new start supersedes the old one
        for old in running:
            if not old.active:
                continue
            await self.sessions.fail(old.session_id, "Superseded by a new recording session")
            await self._notify_ended(old, notify=old.initiator_id)

        logger.info(f"Start record sent to phone {phone.device_id} (session {session.session_id})")
        await self._safe_send(handle, messages.SESSION_STARTED, {
            "sessionId": session.session_id,
            "phoneDeviceId": phone.device_id,
        }, session.session_id)

    async def _stop_record(self, handle: str, msg: messages.Inbound):
        sender_id = await self._sender_id(handle, msg)
        logger.info(f"Stop record from {sender_id} ({handle})")

        try:
            session = await self._resolve_session(msg, sender_id, as_phone=False)
        except RouteFailure as e:
            await self._reply_error(handle, str(e), msg.session_id)
            return

        if session is not None:
            phone = await self.registry.get(session.phone_id)
        else:
            phone = await self.registry.find_by_type(DeviceType.PHONE)
        if phone is None:
            logger.warning(f"{NO_PHONE} for stop command from {sender_id}")
            await self._reply_error(handle, NO_PHONE, msg.session_id)
            return

        session_id = session.session_id if session else None
        try:
            await self._forward(phone, messages.STOP_RECORD, msg.data, session_id, PHONE_SOCKET_MISSING)
        except RouteFailure as e:
            await self._reply_error(handle, str(e), session_id)
            return
        logger.info(f"Stop record sent to phone {phone.device_id}")

    async def _recording_ready(self, handle: str, msg: messages.Inbound):
        payload: messages.RecordingReady = msg.payload
        sender_id = await self._sender_id(handle, msg)
        logger.info(f"Recording ready from {sender_id}: {payload.video_url}")

        try:
            session = await self._resolve_session(msg, sender_id, as_phone=True)
        except RouteFailure as e:
            await self._reply_error(handle, str(e), msg.session_id)
            return

        tablet = None
        if session is not None:
            tablet = await self.registry.get(session.initiator_id)
        if tablet is None:
            tablet = await self.registry.find_by_type(DeviceType.TABLET)

        session_id = session.session_id if session else None
        try:
            if tablet is None:
                raise RouteFailure(NO_TABLET)
            await self._forward(tablet, messages.VIDEO_UPLOADED, msg.data, session_id, TABLET_SOCKET_MISSING)
        except RouteFailure as e:
            logger.warning(f"Video {payload.video_url} not delivered: {e}")
            if session is not None:
                await self.sessions.fail(session.session_id, str(e))
            await self._reply_error(handle, str(e), session_id)
            return

        logger.info(f"Video URL sent to tablet {tablet.device_id}: {payload.video_url}")
        if session is not None:
            try:
                await self.sessions.deliver(session.session_id, payload.video_url)
            except InvalidTransition as e:
                logger.warning(str(e))

    # --- Lifecycle ---

    async def handle_disconnect(self, handle: str, reason: str):
        device = await self.registry.remove_by_connection(handle)
        if device is None:
            return
        failed = await self.sessions.fail_for_device(
            device.device_id, f"{device.device_type.value.capitalize()} device disconnected"
        )
        for session in failed:
            await self._notify_ended(session, notify=session.peer_of(device.device_id))

    async def expire_sessions(self) -> list[Session]:
        """Fail timed-out sessions and tell their initiators."""
        expired = await self.sessions.expire()
        for session in expired:
            await self._notify_ended(session, notify=session.initiator_id)
        return expired

    # --- Helpers ---

    async def _sender_id(self, handle: str, msg: messages.Inbound) -> str:
        device = await self.registry.find_by_handle(handle)
        return device.device_id if device else msg.payload.device_id

    async def _resolve_session(self, msg: messages.Inbound, sender_id: str, as_phone: bool) -> Optional[Session]:
        """Find the session a stop/recording-ready belongs to.

        An explicit sessionId must name an active session the sender takes
        part in. Without one, the sender's only active session is used, or
        None for plain first-of-type routing.
        """
        def participant(s: Session) -> bool:
            return (s.phone_id if as_phone else s.initiator_id) == sender_id

        if msg.session_id:
            session = await self.sessions.get(msg.session_id)
            if session is None or not session.active or not participant(session):
                logger.warning(f"{msg.type} from {sender_id} names unknown session {msg.session_id}")
                raise RouteFailure(UNKNOWN_SESSION)
            return session

        candidates = [s for s in await self.sessions.active_for(sender_id) if participant(s)]
        if len(candidates) == 1:
            return candidates[0]
        return None

    async def _forward(self, device: Device, msg_type: str, data: dict, session_id: Optional[str], stale_message: str):
        if not self.gateway.is_open(device.handle):
            logger.error(f"{stale_message}: {device.device_id} on {device.handle}")
            raise RouteFailure(stale_message)
        try:
            await self.gateway.send(device.handle, msg_type, data, session_id)
        except StaleConnectionError as e:
            logger.error(f"{stale_message}: {device.device_id} ({e})")
            raise RouteFailure(stale_message) from e

    async def _notify_ended(self, session: Session, notify: str):
        data = {
            "sessionId": session.session_id,
            "state": session.state.value,
            "reason": session.reason,
        }
        device = await self.registry.get(notify)
        handle = device.handle if device else None
        if handle is None and notify == session.initiator_id:
            handle = session.initiator_handle
        if handle is None:
            logger.info(f"Session {session.session_id} ended; {notify} is gone, nobody to notify")
            return
        await self._safe_send(handle, messages.SESSION_ENDED, data, session.session_id)

    async def _reply_error(self, handle: str, message: str, session_id: Optional[str] = None):
        await self._safe_send(handle, messages.ERROR, {"message": message}, session_id)

    async def _safe_send(self, handle: str, msg_type: str, data: Optional[dict] = None, session_id: Optional[str] = None):
        try:
            await self.gateway.send(handle, msg_type, data, session_id)
        except StaleConnectionError as e:
            logger.warning(f"Could not send {msg_type} to {handle}: {e}")
