import asyncio
import unittest

import ollama

from ollama_chat_loop.cancellation import CancellationSignal
from ollama_chat_loop.errors import IncompleteStreamError, StreamError, TransportError
from ollama_chat_loop.models import PROGRESS_STREAM
from ollama_chat_loop.streaming import StreamingResponseIterator
from tests.fakes import FakeSource, chat_payload, final_payload


async def _collect(iterator: StreamingResponseIterator) -> list:
    return [chunk async for chunk in iterator]


class StreamingResponseIteratorTests(unittest.TestCase):
    def _run(self, source: FakeSource, **kwargs):
        completions = []

        async def scenario():
            cancel = CancellationSignal()
            iterator = StreamingResponseIterator(source, cancel, on_complete=completions.append, **kwargs)
            chunks = await _collect(iterator)
            return iterator, chunks

        iterator, chunks = asyncio.run(scenario())
        return iterator, chunks, completions

    def test_yields_until_terminal_chunk_and_fires_callback_once(self) -> None:
        source = FakeSource([
            chat_payload("Hel"),
            chat_payload("lo"),
            final_payload(eval_count=7, total_duration=1200),
        ])
        iterator, chunks, completions = self._run(source)

        self.assertEqual(["Hel", "lo", ""], [c.content for c in chunks])
        self.assertEqual([False, False, True], [c.is_final for c in chunks])
        self.assertEqual(1, len(completions))
        self.assertIs(chunks[-1], completions[0])
        self.assertEqual("stop", chunks[-1].termination_reason)
        self.assertEqual({"eval_count": 7, "total_duration": 1200}, chunks[-1].metrics)
        self.assertTrue(iterator.completed)
        self.assertFalse(iterator.cancelled)
        self.assertTrue(source.closed)

    def test_nothing_is_read_after_the_terminal_chunk(self) -> None:
        source = FakeSource([final_payload("done"), chat_payload("late")])
        _, chunks, completions = self._run(source)

        self.assertEqual(1, len(chunks))
        self.assertEqual(1, source.pulled)
        self.assertEqual(1, len(completions))

    def test_error_payload_raises_stream_error(self) -> None:
        source = FakeSource([{"error": "model not found"}, final_payload()])
        with self.assertRaises(StreamError) as ctx:
            self._run(source)
        self.assertEqual("model not found", ctx.exception.server_message)
        self.assertEqual(1, source.pulled)
        self.assertTrue(source.closed)

    def test_client_response_error_becomes_stream_error(self) -> None:
        source = FakeSource([chat_payload("a"), ollama.ResponseError("out of memory", 500)])
        with self.assertRaises(StreamError) as ctx:
            self._run(source)
        self.assertEqual("out of memory", ctx.exception.server_message)

    def test_exhausted_source_without_terminal_chunk_is_incomplete(self) -> None:
        completions = []

        async def scenario():
            iterator = StreamingResponseIterator(
                FakeSource([chat_payload("partial")]),
                CancellationSignal(),
                on_complete=completions.append,
            )
            seen = []
            with self.assertRaises(IncompleteStreamError):
                async for chunk in iterator:
                    seen.append(chunk)
            return seen

        seen = asyncio.run(scenario())
        self.assertEqual(["partial"], [c.content for c in seen])
        self.assertEqual([], completions)

    def test_already_fired_signal_ends_sequence_and_closes_source(self) -> None:
        source = FakeSource([chat_payload("never"), final_payload()])
        completions = []

        async def scenario():
            cancel = CancellationSignal()
            cancel.fire("test")
            iterator = StreamingResponseIterator(source, cancel, on_complete=completions.append)
            return iterator, await _collect(iterator)

        iterator, chunks = asyncio.run(scenario())
        self.assertEqual([], chunks)
        self.assertTrue(iterator.cancelled)
        self.assertFalse(iterator.completed)
        self.assertTrue(source.closed)
        self.assertEqual(0, source.pulled)
        self.assertEqual([], completions)

    def test_signal_fired_during_blocked_pull_ends_without_error(self) -> None:
        source = FakeSource([chat_payload("Hi"), final_payload()], hang_after=1)
        completions = []

        async def scenario():
            cancel = CancellationSignal()
            iterator = StreamingResponseIterator(source, cancel, on_complete=completions.append)
            asyncio.get_running_loop().call_later(0.05, cancel.fire, "SIGINT")
            return iterator, await _collect(iterator)

        iterator, chunks = asyncio.run(scenario())
        self.assertEqual(["Hi"], [c.content for c in chunks])
        self.assertTrue(iterator.cancelled)
        self.assertEqual([], completions)
        self.assertTrue(source.closed)

    def test_progress_stream_terminates_on_success_status(self) -> None:
        source = FakeSource([{"status": "pulling manifest"}, {"status": "success"}])
        iterator, chunks, completions = self._run(source, kind=PROGRESS_STREAM)

        self.assertEqual(["pulling manifest", "success"], [c.content for c in chunks])
        self.assertTrue(chunks[-1].is_final)
        self.assertEqual(1, len(completions))

    def test_pydantic_payloads_are_decoded(self) -> None:
        payload = ollama.ChatResponse(
            model="mistral",
            done=True,
            done_reason="stop",
            message=ollama.Message(role="assistant", content="typed"),
        )
        _, chunks, _ = self._run(FakeSource([payload]))
        self.assertEqual("typed", chunks[0].content)
        self.assertTrue(chunks[0].is_final)

    def test_connection_failure_before_first_chunk_is_transport_error(self) -> None:
        source = FakeSource([ConnectionError("refused")])

        async def scenario():
            iterator = StreamingResponseIterator(source, CancellationSignal())
            await iterator.prime()

        with self.assertRaises(TransportError):
            asyncio.run(scenario())
        self.assertTrue(source.closed)

    def test_connection_lost_mid_stream_is_incomplete(self) -> None:
        source = FakeSource([chat_payload("a"), ConnectionError("reset")])
        with self.assertRaises(IncompleteStreamError):
            self._run(source)


if __name__ == "__main__":
    unittest.main()
