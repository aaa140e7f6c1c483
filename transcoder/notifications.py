import json
import logging
import queue
import threading
import uuid

import redis

logger = logging.getLogger(__name__)


def to_client_message(event: str, data):
    """
    Broker event -> (client event, payload):
    progress -> ("progress", percent), completed/failed -> ("status", event).
    """
    if event == "progress":
        return "progress", data
    if event in ("completed", "failed"):
        return "status", event
    return None


class QueueConnection:
    """
    One subscriber connection backed by an in-process queue. The SSE view
    drains it; ``send`` never blocks the router.
    """

    def __init__(self, maxsize: int = 256):
        self.id = uuid.uuid4().hex
        self._queue = queue.Queue(maxsize=maxsize)

    def __repr__(self):
        return f"<QueueConnection {self.id}>"

    def send(self, event: str, data) -> None:
        try:
            self._queue.put_nowait((event, data))
        except queue.Full:
            # A stalled reader can lose progress but must still see the terminal status.
            if event != "status":
                return
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass
            self._queue.put_nowait((event, data))

    def receive(self, timeout: float | None = None):
        """Next (event, data), or None on timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None


class NotificationRouter:
    """
    Relays job lifecycle events to the connections that subscribed to that
    job's room. Rooms and memberships live on the instance; disconnecting
    a connection drops it from every room it joined.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._rooms: dict[str, set] = {}
        self._memberships: dict[object, set[str]] = {}
        self._listener: threading.Thread | None = None
        self._stop = threading.Event()

    def connect(self, conn) -> None:
        with self._lock:
            self._memberships.setdefault(conn, set())
        logger.debug("Connection %r opened", conn)

    def subscribe(self, conn, job_id) -> None:
        job_id = str(job_id)
        with self._lock:
            self._memberships.setdefault(conn, set()).add(job_id)
            self._rooms.setdefault(job_id, set()).add(conn)
        logger.info("Connection %r watching job %s", conn, job_id)

    def disconnect(self, conn) -> None:
        with self._lock:
            rooms = self._memberships.pop(conn, set())
            for job_id in rooms:
                members = self._rooms.get(job_id)
                if members is None:
                    continue
                members.discard(conn)
                if not members:
                    del self._rooms[job_id]
        logger.debug("Connection %r closed, left %d room(s)", conn, len(rooms))

    def room_size(self, job_id) -> int:
        with self._lock:
            return len(self._rooms.get(str(job_id), ()))

    def dispatch(self, event: dict) -> int:
        """Forward one ``{jobId, event, data}`` event; returns deliveries made."""
        message = to_client_message(event.get("event"), event.get("data"))
        job_id = event.get("jobId")
        if message is None or job_id is None:
            logger.debug("Ignoring event %r", event)
            return 0

        with self._lock:
            members = list(self._rooms.get(str(job_id), ()))

        delivered = 0
        for conn in members:
            try:
                conn.send(*message)
            except Exception:
                logger.warning("Dropping connection %r after failed send", conn, exc_info=True)
                self.disconnect(conn)
            else:
                delivered += 1
        return delivered

    def handle_message(self, message: dict) -> int:
        """Decode a Redis pub/sub message and dispatch it."""
        if message.get("type") != "message":
            return 0
        payload = message.get("data")
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        try:
            event = json.loads(payload)
        except (TypeError, ValueError):
            logger.warning("Discarding malformed event %r", payload)
            return 0
        if not isinstance(event, dict):
            return 0
        return self.dispatch(event)

    def listen(self, client, channel: str, stop: threading.Event | None = None, poll: float = 1.0) -> None:
        """Consume ``channel`` until ``stop`` is set."""
        stop = stop or self._stop
        pubsub = client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(channel)
        logger.info("Relaying events from %s", channel)
        try:
            while not stop.is_set():
                message = pubsub.get_message(timeout=poll)
                if message:
                    self.handle_message(message)
        finally:
            pubsub.close()

    def start(self, client, channel: str) -> None:
        """Run ``listen`` on a daemon thread; later calls are no-ops while it runs."""
        with self._lock:
            if self._listener is not None and self._listener.is_alive():
                return
            self._stop.clear()
            self._listener = threading.Thread(
                target=self._listen_forever, args=(client, channel), name="notification-router", daemon=True
            )
            self._listener.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        listener = self._listener
        if listener is not None:
            listener.join(timeout)

    def _listen_forever(self, client, channel):
        while not self._stop.is_set():
            try:
                self.listen(client, channel)
            except redis.RedisError:
                logger.exception("Event subscription lost; reconnecting")
                self._stop.wait(2.0)
