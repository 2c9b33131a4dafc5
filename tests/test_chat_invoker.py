import asyncio
import unittest

import httpx

from ollama_chat_loop.cancellation import CancellationSignal
from ollama_chat_loop.chat_invoker import ChatInvoker, resolve_model, validate_prompt
from ollama_chat_loop.errors import InvalidArgument, TransportError
from ollama_chat_loop.models import Turn
from tests.fakes import FakeOllamaClient, FakeSource, chat_payload, final_payload


class ChatInvokerTests(unittest.TestCase):
    def _invoker(self, client: FakeOllamaClient, **kwargs) -> ChatInvoker:
        return ChatInvoker(client, "mistral", CancellationSignal(), **kwargs)

    def test_invoke_sends_turns_in_order_and_streams_chunks(self) -> None:
        client = FakeOllamaClient(FakeSource([chat_payload("Hi"), final_payload()]))
        invoker = self._invoker(client, temperature=0.2, keep_alive="5m")
        turns = [Turn.user("one"), Turn.assistant("two"), Turn.user("three")]

        async def scenario():
            stream = await invoker.invoke(turns)
            return [c async for c in stream]

        chunks = asyncio.run(scenario())

        self.assertEqual(["Hi", ""], [c.content for c in chunks])
        request = client.requests[0]
        self.assertEqual("mistral", request["model"])
        self.assertTrue(request["stream"])
        self.assertEqual({"temperature": 0.2}, request["options"])
        self.assertEqual("5m", request["keep_alive"])
        self.assertEqual(
            [
                {"role": "user", "content": "one"},
                {"role": "assistant", "content": "two"},
                {"role": "user", "content": "three"},
            ],
            request["messages"],
        )

    def test_optional_request_fields_are_omitted(self) -> None:
        client = FakeOllamaClient(FakeSource([final_payload("x")]))

        async def scenario():
            await self._invoker(client).invoke([Turn.user("hi")])

        asyncio.run(scenario())
        self.assertNotIn("options", client.requests[0])
        self.assertNotIn("keep_alive", client.requests[0])

    def test_empty_prompt_fails_before_any_request(self) -> None:
        client = FakeOllamaClient()
        invoker = self._invoker(client)
        with self.assertRaises(InvalidArgument):
            asyncio.run(invoker.invoke([Turn.user("")]))
        self.assertEqual([], client.requests)

    def test_whitespace_only_prompt_is_sent_as_is(self) -> None:
        client = FakeOllamaClient(FakeSource([final_payload("?")]))

        async def scenario():
            stream = await self._invoker(client).invoke([Turn.user("   ")])
            return [c async for c in stream]

        chunks = asyncio.run(scenario())
        self.assertEqual([{"role": "user", "content": "   "}], client.requests[0]["messages"])
        self.assertTrue(chunks[-1].is_final)

    def test_last_turn_must_be_a_user_prompt(self) -> None:
        client = FakeOllamaClient()
        invoker = self._invoker(client)
        with self.assertRaises(InvalidArgument):
            asyncio.run(invoker.invoke([Turn.user("q"), Turn.assistant("a")]))
        with self.assertRaises(InvalidArgument):
            asyncio.run(invoker.invoke([]))
        self.assertEqual([], client.requests)

    def test_unreachable_server_is_transport_error(self) -> None:
        client = FakeOllamaClient(error=ConnectionError("Failed to connect to Ollama"))
        with self.assertRaises(TransportError):
            asyncio.run(self._invoker(client).invoke([Turn.user("hi")]))

    def test_connect_failure_on_first_read_is_transport_error(self) -> None:
        source = FakeSource([httpx.ConnectError("connection refused")])
        client = FakeOllamaClient(source)
        with self.assertRaises(TransportError):
            asyncio.run(self._invoker(client).invoke([Turn.user("hi")]))
        self.assertTrue(source.closed)

    def test_completion_callback_receives_final_chunk(self) -> None:
        client = FakeOllamaClient(FakeSource([chat_payload("a"), final_payload(eval_count=2)]))
        finals = []

        async def scenario():
            stream = await self._invoker(client).invoke([Turn.user("hi")], on_complete=finals.append)
            async for _ in stream:
                pass

        asyncio.run(scenario())
        self.assertEqual(1, len(finals))
        self.assertEqual({"eval_count": 2}, finals[0].metrics)


class PromptHelpersTests(unittest.TestCase):
    def test_validate_prompt_rejects_non_strings(self) -> None:
        with self.assertRaises(InvalidArgument):
            validate_prompt(42)
        with self.assertRaises(ValueError):
            validate_prompt(None)
        self.assertEqual("ok", validate_prompt("ok"))
        self.assertEqual(" \t", validate_prompt(" \t"))

    def test_resolve_model_uses_aliases(self) -> None:
        self.assertEqual("llama3.2", resolve_model(" Llama "))
        self.assertEqual("deepseek-r1", resolve_model("deepseek"))
        self.assertEqual("mistral", resolve_model("Mistral"))
        self.assertEqual("qwen2.5:7b", resolve_model("qwen2.5:7b"))


if __name__ == "__main__":
    unittest.main()
