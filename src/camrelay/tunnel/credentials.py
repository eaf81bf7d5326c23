"""
SSH credential resolution.

Produces the ordered list of signing identities offered to the remote host:
keys held by a running ssh-agent first, then the configured key file. If the
key file is passphrase protected and no passphrase is configured, the
operator is prompted once on the terminal.

The prompt blocks. Credential resolution runs only from the tunnel connect
sequence, which the tunnel manager serializes, so at most one prompt can be
pending at a time and no task uses the identities before it completes. It
runs on a daemon thread so a shutdown can abandon an unanswered prompt.
"""

import asyncio
import os
import threading
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import asyncssh
from rich.prompt import Prompt

from camrelay.exceptions import NoUsableCredentials
from camrelay.utils.logger import get_logger

logger = get_logger(__name__)


def prompt_passphrase(key_path: str) -> str:
    """Ask the operator for a key passphrase without echoing it."""
    return Prompt.ask(f"Enter SSH key passphrase for {key_path}", password=True)


@dataclass
class CredentialMaterial:
    """Identities resolved for one connection attempt."""

    identities: list = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    agent: asyncssh.SSHAgentClient | None = None

    def close(self) -> None:
        """Release the agent connection, if one was opened."""
        if self.agent is not None:
            self.agent.close()
            self.agent = None


class CredentialResolver:
    """Resolve SSH identities from ssh-agent and a key file."""

    def __init__(
        self,
        key_path: str,
        passphrase: str | None = None,
        prompt: Callable[[str], str] = prompt_passphrase,
        agent_connector: Callable[[], Awaitable] | None = None,
    ):
        """
        Initialize the resolver.

        Args:
            key_path: Private key file (supports ~ expansion).
            passphrase: Pre-supplied passphrase, None to prompt if needed.
            prompt: Blocking prompt used when the key is protected.
            agent_connector: Coroutine factory returning an agent client;
                defaults to asyncssh.connect_agent.
        """
        self.key_path = os.path.expanduser(key_path)
        self._passphrase = passphrase or None
        self._prompt = prompt
        self._agent_connector = agent_connector or asyncssh.connect_agent

    async def resolve(self) -> CredentialMaterial:
        """
        Produce a non-empty ordered list of signing identities.

        Raises:
            NoUsableCredentials: If neither the agent nor the key file
                yielded an identity.
        """
        material = CredentialMaterial()
        reasons: list[str] = []

        # 1. ssh-agent
        try:
            agent = await self._agent_connector()
            if agent is not None:
                keys = await agent.get_keys()
                if keys:
                    material.agent = agent
                    material.identities.extend(keys)
                    material.sources.append("agent")
                    logger.info(f"Using SSH agent for authentication ({len(keys)} keys)")
                else:
                    agent.close()
                    reasons.append("ssh-agent holds no keys")
        except (OSError, asyncssh.Error) as e:
            logger.debug(f"SSH agent unavailable: {e}")
            reasons.append(f"ssh-agent unavailable ({e})")

        # 2. Key file
        try:
            key = await self._load_key_file()
            material.identities.append(key)
            material.sources.append("key_file")
            logger.info("Using SSH key file for authentication")
        except (OSError, ValueError) as e:
            reasons.append(str(e))
            if material.identities:
                logger.warning(f"SSH key file failed, using agent only: {e}")
            else:
                logger.error(f"SSH key file failed: {e}")

        if not material.identities:
            material.close()
            raise NoUsableCredentials(reasons)

        return material

    async def _load_key_file(self) -> asyncssh.SSHKey:
        """Parse the key file, prompting for a passphrase once if required."""
        path = self.key_path
        if not os.path.exists(path):
            raise FileNotFoundError(f"SSH key file does not exist: {path}")

        with open(path, "rb") as f:
            key_data = f.read()

        if not key_data:
            raise ValueError(f"SSH key file is empty: {path}")

        logger.debug(f"Attempting to parse SSH key: {path} ({len(key_data)} bytes)")

        try:
            key = asyncssh.import_private_key(key_data)
            logger.debug("Parsed SSH key without passphrase")
            return key
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
            if "passphrase" not in str(e).lower():
                raise ValueError(f"Failed to parse SSH key {path}: {e}") from e

        logger.info("SSH key appears to be passphrase protected")
        passphrase = self._passphrase
        prompted = False
        if passphrase is None:
            # The connect sequence waits here until the operator answers
            passphrase = await self._ask_passphrase(path)
            prompted = True

        try:
            key = asyncssh.import_private_key(key_data, passphrase)
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
            raise ValueError(
                f"Failed to parse SSH key {path} with passphrase: {e}"
            ) from e

        if prompted:
            # Reconnects reuse it instead of blocking on the terminal again
            self._passphrase = passphrase
        logger.info("Parsed SSH key with passphrase")
        return key

    async def _ask_passphrase(self, path: str) -> str:
        """
        Run the blocking prompt on a daemon thread and await its answer.

        Cancelling the wait abandons the prompt; the thread stays blocked on
        the terminal but does not hold up interpreter exit.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def _set_result(value: str) -> None:
            if not future.done():
                future.set_result(value)

        def _set_exception(error: BaseException) -> None:
            if not future.done():
                future.set_exception(error)

        def _do_prompt() -> None:
            try:
                value = self._prompt(path)
            except Exception as e:
                callback, arg = _set_exception, e
            else:
                callback, arg = _set_result, value
            try:
                loop.call_soon_threadsafe(callback, arg)
            except RuntimeError:
                # Event loop already closed
                pass

        t = threading.Thread(target=_do_prompt, name="passphrase-prompt", daemon=True)
        t.start()
        return await future
