import asyncio
from typing import List, Optional, Set
import httpx
from logging_config import get_logger

logger = get_logger(__name__)


class SignalClient:
    """HTTP side of a call participant: send signals, read the roster, poll the buffer.

    Polled messages are de-duplicated by id, and the server timestamp of each
    poll becomes the `since` of the next one.
    """

    def __init__(self, base_url: str, project_id: str, user_id: str, user_name: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.project_id = project_id
        self.user_id = user_id
        headers = {"X-User-Id": user_id}
        if user_name:
            headers["X-User-Name"] = user_name
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.client.headers.update(headers)
        self.last_poll_timestamp = 0
        self.overlap_ms = 1000
        self._seen_ids: Set[str] = set()

    @property
    def base_path(self) -> str:
        return f"/api/chat/{self.project_id}"

    async def send(self, signal: dict) -> None:
        response = await self.client.post(f"{self.base_path}/signal", json=signal)
        response.raise_for_status()

    async def send_with_retry(self, signal: dict, retries: int = 3, delay: float = 1.0) -> bool:
        for attempt in range(retries + 1):
            try:
                await self.send(signal)
                return True
            except httpx.HTTPError as e:
                if attempt == retries:
                    logger.error(f"Failed to send {signal.get('type')} after {retries} retries: {e}")
                    return False
                logger.debug(f"Retrying {signal.get('type')} in {delay}s after: {e}")
                await asyncio.sleep(delay)
        return False

    async def participants(self) -> List[dict]:
        response = await self.client.get(f"{self.base_path}/participants")
        response.raise_for_status()
        return response.json().get("participants", [])

    async def poll(self) -> List[dict]:
        """New buffered messages since the previous poll, each returned once."""
        response = await self.client.get(f"{self.base_path}/signal", params={"since": self.last_poll_timestamp})
        response.raise_for_status()
        body = response.json()
        fresh = []
        for message in body.get("messages", []):
            message_id = message.get("id")
            if message_id in self._seen_ids:
                continue
            self._seen_ids.add(message_id)
            fresh.append(message)
        # The cursor overlaps the previous window so signals stamped in the same
        # millisecond as the response are not skipped; overlap is filtered above.
        server_time = body.get("timestamp")
        if server_time is not None:
            self.last_poll_timestamp = max(self.last_poll_timestamp, server_time - self.overlap_ms)
        self._seen_ids = {m.get("id") for m in body.get("messages", [])}
        return fresh

    async def skip_backlog(self) -> int:
        """Move the cursor past everything already buffered without returning it.

        A joining client learns the room from the roster; replaying older
        joins and leaves would tear down calls it just placed.
        """
        skipped = await self.poll()
        logger.debug(f"Skipped {len(skipped)} buffered signals in project {self.project_id}")
        return len(skipped)

    async def aclose(self) -> None:
        await self.client.aclose()
