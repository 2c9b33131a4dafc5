import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from ollama_chat_loop.app_config import load_json_config, parse_app_config
from ollama_chat_loop.bootstrap import bootstrap_runtime
from ollama_chat_loop.console import Spinner, StdoutSink, read_line
from ollama_chat_loop.errors import Cancelled, ChatClientError, InvalidArgument
from ollama_chat_loop.orchestrator import ChatState

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_ABORTED = 130

_PROMPT = "What do you want to ask the agent? "


async def main() -> int:
    load_dotenv()
    app = parse_app_config(load_json_config())
    runtime = bootstrap_runtime(app)
    runtime.cancel.arm()

    try:
        try:
            prompt = await read_line(_PROMPT, runtime.cancel)
        except (Cancelled, EOFError):
            print(file=sys.stderr)
            return EXIT_ABORTED

        spinner = Spinner(runtime.model, runtime.cancel)
        spinner.start()
        try:
            result = await runtime.orchestrator.run(prompt, StdoutSink(spinner))
        except InvalidArgument as ex:
            print(f"Error: {ex}", file=sys.stderr)
            return EXIT_USAGE
        except ChatClientError as ex:
            print(f"\nError: {ex}", file=sys.stderr)
            return EXIT_ERROR
        finally:
            spinner.stop()

        print()
        if result.state is ChatState.ABORTED:
            return EXIT_ABORTED
        return EXIT_OK
    except Exception as ex:
        logger.exception(f"Unhandled error: {ex}")
        return EXIT_ERROR
    finally:
        runtime.close()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
