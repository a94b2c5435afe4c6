"""
powerbi-chat: terminal front-end for the streaming chat relay
"""
import argparse
import asyncio
import getpass
import logging
import os
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from powerbi_chat.events import ChatMessage, ChatProvider, StreamEventType
from powerbi_chat.prompts import build_system_prompt
from powerbi_chat.relay import StreamingRelay
from powerbi_chat.secrets import KeyringSecretStore
from powerbi_config import default_server_config, load_server_config
from powerbi_errors import ConfigError

logger = logging.getLogger(__name__)

SESSION_ID = "cli"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="powerbi-chat", description="Chat with an AI assistant about your Power BI models")
    providers = [p.value for p in ChatProvider]
    parser.add_argument("--provider", choices=providers, default=os.getenv("CHAT_PROVIDER", ChatProvider.OLLAMA.value))
    parser.add_argument("--config", default=os.getenv("POWERBI_MCP_CONFIG"), help="Settings file providing the connection context")
    parser.add_argument("--set-key", choices=providers[1:], metavar="PROVIDER", help="Store an API key in the system keychain")
    parser.add_argument("--delete-key", choices=providers[1:], metavar="PROVIDER", help="Remove a stored API key")
    return parser.parse_args(argv)


def load_connection(path: Optional[str]):
    if path and os.path.exists(path):
        try:
            return load_server_config(path).connection
        except ConfigError as e:
            logger.warning(f"Ignoring configuration {path}: {e.message}")
    return default_server_config().connection


async def stream_reply(relay: StreamingRelay, provider: str, text: str, history: List[ChatMessage]) -> Optional[str]:
    """Print one reply as it streams; Ctrl+C cancels it. Returns the reply text unless it failed."""
    loop = asyncio.get_event_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, relay.cancel, SESSION_ID)
        cancellable = True
    except (NotImplementedError, RuntimeError):
        cancellable = False

    parts: List[str] = []
    try:
        async for event in relay.send(SESSION_ID, provider, text, history):
            if event.type is StreamEventType.CHUNK:
                parts.append(event.text)
                sys.stdout.write(event.text)
                sys.stdout.flush()
            elif event.type is StreamEventType.ERROR:
                sys.stdout.write(f"\n[error] {event.message}\n")
                return None
    finally:
        if cancellable:
            loop.remove_signal_handler(signal.SIGINT)
    sys.stdout.write("\n")
    return ''.join(parts)


async def repl(args: argparse.Namespace, secrets: KeyringSecretStore) -> int:
    connection = load_connection(args.config)
    relay = StreamingRelay(secrets, lambda: build_system_prompt(connection))
    history: List[ChatMessage] = []
    loop = asyncio.get_event_loop()

    print(f"Power BI chat ({args.provider}). Ctrl+C cancels a reply, Ctrl+D exits.")
    try:
        while True:
            try:
                text = await loop.run_in_executor(None, input, "> ")
            except EOFError:
                break
            text = text.strip()
            if not text:
                continue
            reply = await stream_reply(relay, args.provider, text, history)
            if reply is not None:
                history.append(ChatMessage('user', text))
                history.append(ChatMessage('assistant', reply))
    finally:
        await relay.aclose()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    args = parse_args(argv)
    secrets = KeyringSecretStore()

    if args.set_key:
        key = getpass.getpass(f"{args.set_key} API key: ").strip()
        if not key:
            print("No key entered", file=sys.stderr)
            return 1
        secrets.set(args.set_key, key)
        print(f"Stored API key for {args.set_key}")
        return 0
    if args.delete_key:
        secrets.delete(args.delete_key)
        print(f"Deleted API key for {args.delete_key}")
        return 0

    try:
        return asyncio.run(repl(args, secrets))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
