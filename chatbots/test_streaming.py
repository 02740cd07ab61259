from django.test import SimpleTestCase
from unittest.mock import MagicMock

from .streaming import SSEFrameDecoder, WidgetChatClient, WidgetStreamError, encode_frame


def stream_response(chunks, status_code=200, json_body=None):
    response = MagicMock()
    response.status_code = status_code
    response.iter_content.return_value = iter(chunks)
    if json_body is not None:
        response.json.return_value = json_body
    return response


class SSEFrameDecoderTests(SimpleTestCase):
    def test_encode_frame_format(self):
        self.assertEqual(encode_frame({'content': 'Hi'}), 'data: {"content": "Hi"}\n\n')
        self.assertEqual(
            encode_frame({'done': True, 'responseTimeMs': 12}),
            'data: {"done": true, "responseTimeMs": 12}\n\n',
        )

    def test_multiple_frames_in_one_read(self):
        decoder = SSEFrameDecoder()

        events = decoder.feed(b'data: {"content": "a"}\n\ndata: {"content": "b"}\n\ndata: {"done": true, "responseTimeMs": 3}\n\n')

        self.assertEqual(events, [{'content': 'a'}, {'content': 'b'}, {'done': True, 'responseTimeMs': 3}])

    def test_frames_split_across_reads_are_buffered(self):
        payload = (encode_frame({'content': 'Hello'}) + encode_frame({'content': ' world'})).encode('utf-8')
        decoder = SSEFrameDecoder()

        events = []
        for index in range(len(payload)):
            events.extend(decoder.feed(payload[index:index + 1]))

        self.assertEqual(events, [{'content': 'Hello'}, {'content': ' world'}])

    def test_multibyte_character_split_between_reads(self):
        raw = 'data: {"content": "ñandú 你好"}\n\n'.encode('utf-8')
        split_at = raw.index('你'.encode('utf-8')) + 1
        decoder = SSEFrameDecoder()

        first = decoder.feed(raw[:split_at])
        second = decoder.feed(raw[split_at:])

        self.assertEqual(first, [])
        self.assertEqual(second, [{'content': 'ñandú 你好'}])

    def test_unparsable_lines_are_skipped(self):
        decoder = SSEFrameDecoder()

        events = decoder.feed(
            b'event: ping\n'
            b': comment\n'
            b'data: {not json}\n'
            b'data: [1, 2]\n'
            b'data: {"content": "kept"}\r\n'
        )

        self.assertEqual(events, [{'content': 'kept'}])

    def test_flush_returns_trailing_line_without_newline(self):
        decoder = SSEFrameDecoder()

        self.assertEqual(decoder.feed(b'data: {"content": "x"}\n\ndata: {"done": true}'), [{'content': 'x'}])
        self.assertEqual(decoder.flush(), [{'done': True}])
        self.assertEqual(decoder.flush(), [])


class WidgetChatClientTests(SimpleTestCase):
    def setUp(self):
        self.http = MagicMock()
        self.client = WidgetChatClient("http://widgets.test/", 7, session_id="session_abc", http=self.http)

    def test_send_message_yields_events_until_done(self):
        self.http.post.return_value = stream_response([
            b'data: {"content": "Hel',
            b'lo"}\n\ndata: {"content": "!"}\n\n',
            b'data: {"done": true, "responseTimeMs": 42}\n\n',
        ])

        text, response_time_ms = self.client.ask("Hi")

        self.assertEqual(text, "Hello!")
        self.assertEqual(response_time_ms, 42)
        args, kwargs = self.http.post.call_args
        self.assertEqual(args[0], "http://widgets.test/api/widget/7/chat")
        self.assertEqual(kwargs['json'], {'message': 'Hi', 'sessionId': 'session_abc'})
        self.assertTrue(kwargs['stream'])
        self.http.post.return_value.close.assert_called_once()

    def test_error_frame_raises(self):
        self.http.post.return_value = stream_response([
            b'data: {"content": "part"}\n\n',
            b'data: {"error": "Failed to get AI response"}\n\n',
        ])

        events = []
        with self.assertRaises(WidgetStreamError) as ctx:
            for event in self.client.send_message("Hi"):
                events.append(event)

        self.assertEqual(events, [{'content': 'part'}])
        self.assertEqual(str(ctx.exception), "Failed to get AI response")

    def test_stream_closed_without_done_raises(self):
        self.http.post.return_value = stream_response([b'data: {"content": "cut"}\n\n'])

        with self.assertRaises(WidgetStreamError):
            list(self.client.send_message("Hi"))

    def test_http_error_before_streaming_raises_with_status(self):
        self.http.post.return_value = stream_response([], status_code=403, json_body={'error': 'Chatbot is not active'})

        with self.assertRaises(WidgetStreamError) as ctx:
            list(self.client.send_message("Hi"))

        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(str(ctx.exception), 'Chatbot is not active')

    def test_fetch_config_and_rate(self):
        self.http.get.return_value = stream_response([], json_body={'id': 7, 'name': 'Support Bot'})
        self.http.post.return_value = stream_response([], status_code=201, json_body={'id': 1, 'rating': 5})

        self.assertEqual(self.client.fetch_config()['name'], 'Support Bot')
        self.client.rate(5, feedback="Great")

        self.assertEqual(self.http.get.call_args.args[0], "http://widgets.test/api/widget/7/config")
        args, kwargs = self.http.post.call_args
        self.assertEqual(args[0], "http://widgets.test/api/widget/7/rate")
        self.assertEqual(kwargs['json'], {'sessionId': 'session_abc', 'rating': 5, 'feedback': 'Great'})
