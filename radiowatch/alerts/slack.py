"""
Slack message sender.

Posts alert text to a channel via chat.postMessage. Delivery happens on a
background thread so callers (the orchestrator control loop) never block on
the network; in dry-run mode messages are only logged.
"""

import logging
import queue
import threading
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"
USER_AGENT = "radiowatch/1.0"

# At most this many messages wait for delivery; newer ones are dropped
MAX_PENDING_MESSAGES = 100


class SlackMessageSender:
    """
    Transport-only Slack client.

    Makes no decisions about what or when to send; AlertManager does that.
    """

    def __init__(
        self,
        auth: Optional[str],
        channel: Optional[str],
        dry_run: bool = False,
        timeout: float = 5.0,
        url: str = SLACK_POST_MESSAGE_URL,
    ):
        self.channel = channel
        self.url = url
        self.timeout = timeout
        self.dry_run = dry_run or not auth or not channel
        self._auth = auth
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue(maxsize=MAX_PENDING_MESSAGES)
        self._thread: Optional[threading.Thread] = None

        # Keep httpx request logging out of the watchdog log
        logging.getLogger("httpx").setLevel(logging.WARNING)

        if self.dry_run:
            logger.warning("Slack sender running in DRY RUN mode, no messages will be sent")

    def send(self, message: str) -> bool:
        """Post one message synchronously. Returns True on success."""
        if self.dry_run:
            logger.info(f"DRY RUN: Slack message: {message}")
            return True

        payload = {"channel": self.channel, "text": message}
        headers = {
            "User-Agent": USER_AGENT,
            "Authorization": f"Bearer {self._auth}",
        }
        try:
            response = httpx.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            logger.warning(f"[SLACK] Failed to send message: {e}")
            return False
        except ValueError as e:
            logger.warning(f"[SLACK] Invalid response from Slack: {e}")
            return False

        # Slack reports API errors with HTTP 200 and ok=false
        if not body.get("ok", False):
            logger.warning(f"[SLACK] Message rejected: {body.get('error', 'unknown error')}")
            return False
        logger.debug("[SLACK] Message sent")
        return True

    # ------------------------------------------------------------------
    # Background delivery
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._worker, daemon=True, name="SlackSender")
        self._thread.start()

    def enqueue(self, message: str) -> None:
        """Queue a message for background delivery (sent inline if the worker is not running)."""
        if self._thread is None or not self._thread.is_alive():
            self.send(message)
            return
        try:
            self._queue.put_nowait(message)
        except queue.Full:
            logger.warning(f"[SLACK] Delivery queue full, dropping message: {message}")

    def stop(self, timeout: float = 5.0) -> None:
        """Deliver what is queued (bounded by timeout) and stop the worker."""
        if self._thread is None:
            return
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            pass
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Slack sender thread did not stop within timeout")
        self._thread = None

    def _worker(self) -> None:
        while True:
            message = self._queue.get()
            if message is None:
                break
            try:
                self.send(message)
            except Exception as e:
                logger.error(f"[SLACK] Unexpected error sending message: {e}", exc_info=True)
