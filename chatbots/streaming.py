"""
Event-stream framing for widget chat responses.

The server writes one `data: <json>\\n\\n` frame per event: zero or more
`{"content": ...}` frames, then exactly one `{"done": true, "responseTimeMs": n}`
or `{"error": ...}` frame. The client side decodes frames incrementally from
arbitrary byte reads.
"""
import codecs
import json
import logging
import uuid
from typing import Any, Dict, Iterable, Iterator, List, Optional

import requests
from django.http import StreamingHttpResponse

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"


def encode_frame(payload: Dict[str, Any]) -> str:
    """Format one event-stream frame."""
    return f"{DATA_PREFIX} {json.dumps(payload)}\n\n"


def event_stream_response(frames: Iterable[str]) -> StreamingHttpResponse:
    response = StreamingHttpResponse(frames, content_type="text/event-stream")
    response["Cache-Control"] = "no-cache"
    response["X-Accel-Buffering"] = "no"
    return response


class SSEFrameDecoder:
    """
    Incremental decoder for the widget event stream.

    Reads may end mid-line or mid-character; the unterminated tail is kept until the
    next `feed`. Lines that are not `data: <json object>` are skipped.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data) -> List[Dict[str, Any]]:
        self._buffer += data if isinstance(data, str) else self._decoder.decode(data)
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> List[Dict[str, Any]]:
        """Decode whatever is left once the stream has closed."""
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        return self._parse_lines([remainder])

    def _parse_lines(self, lines: Iterable[str]) -> List[Dict[str, Any]]:
        events = []
        for line in lines:
            event = self.parse_line(line)
            if event is not None:
                events.append(event)
        return events

    @staticmethod
    def parse_line(line: str) -> Optional[Dict[str, Any]]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None
        payload = line[len(DATA_PREFIX):].strip()
        try:
            event = json.loads(payload)
        except ValueError:
            logger.debug("Skipping unparsable event-stream line: %r", line[:200])
            return None
        return event if isinstance(event, dict) else None


class WidgetStreamError(Exception):
    """A widget request failed, either before streaming or through an error frame."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class WidgetChatClient:
    """
    Minimal client for the public widget API, speaking to it the way the embedded
    script does.
    """

    def __init__(
        self,
        base_url: str,
        chatbot_id,
        session_id: Optional[str] = None,
        timeout=(10, 130),
        http: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.chatbot_id = chatbot_id
        self.session_id = session_id or f"session_{uuid.uuid4().hex}"
        self.timeout = timeout
        self.http = http or requests.Session()

    def _url(self, action: str) -> str:
        return f"{self.base_url}/api/widget/{self.chatbot_id}/{action}"

    @staticmethod
    def _raise_for_error(response: requests.Response) -> None:
        if response.status_code < 400:
            return
        try:
            message = response.json().get("error") or response.text
        except ValueError:
            message = response.text or f"HTTP {response.status_code}"
        raise WidgetStreamError(message, status_code=response.status_code)

    def fetch_config(self) -> Dict[str, Any]:
        response = self.http.get(self._url("config"), timeout=self.timeout)
        self._raise_for_error(response)
        return response.json()

    def _events(self, response: requests.Response) -> Iterator[Dict[str, Any]]:
        decoder = SSEFrameDecoder()
        for chunk in response.iter_content(chunk_size=None):
            yield from decoder.feed(chunk)
        yield from decoder.flush()

    def send_message(self, message: str) -> Iterator[Dict[str, Any]]:
        """
        Post a visitor message and yield decoded events up to and including `done`.

        Raises WidgetStreamError on an HTTP error, an error frame, or a stream that
        ends without a completion frame.
        """
        response = self.http.post(
            self._url("chat"),
            json={"message": message, "sessionId": self.session_id},
            headers={"Accept": "text/event-stream"},
            stream=True,
            timeout=self.timeout,
        )
        try:
            self._raise_for_error(response)
            for event in self._events(response):
                if "error" in event:
                    raise WidgetStreamError(event["error"], status_code=response.status_code)
                yield event
                if event.get("done"):
                    return
            raise WidgetStreamError("Stream closed before the response completed")
        finally:
            response.close()

    def ask(self, message: str):
        """Send a message and return `(reply_text, response_time_ms)`."""
        parts = []
        response_time_ms = None
        for event in self.send_message(message):
            if "content" in event:
                parts.append(event["content"])
            if event.get("done"):
                response_time_ms = event.get("responseTimeMs")
        return "".join(parts), response_time_ms

    def rate(self, rating: int, feedback: Optional[str] = None) -> Dict[str, Any]:
        payload = {"sessionId": self.session_id, "rating": rating}
        if feedback:
            payload["feedback"] = feedback
        response = self.http.post(self._url("rate"), json=payload, timeout=self.timeout)
        self._raise_for_error(response)
        return response.json()
