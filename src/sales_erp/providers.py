"""External collaborators consumed by the sales backend.

Identity, key management, object storage and email are treated as opaque
contracts described by the protocols below. The package ships local
implementations for storage (a directory on disk) and email (an SMTP relay);
identity and key management are supplied by the deployment.

Provider calls go through :func:`call_provider`, which converts whatever the
provider raises into the domain taxonomy via
:func:`~sales_erp.errors.map_provider_error`.
"""

from __future__ import annotations

import asyncio
import smtplib
from email.message import EmailMessage
from pathlib import Path, PurePosixPath
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence, TypeVar, runtime_checkable

from . import log
from .errors import ValidationError, map_provider_error


T = TypeVar("T")


@runtime_checkable
class IdentityProvider(Protocol):
    """Credential validation and account lifecycle."""

    async def verify_token(self, token: str) -> Mapping[str, Any]:
        """Return the claims of a valid access token."""

    async def validate_credentials(self, username: str, password: str) -> Mapping[str, str]:
        """Exchange a username and password for session tokens."""

    async def register(self, username: str, password: str, email: str) -> None: ...

    async def confirm(self, username: str, code: str) -> None: ...

    async def refresh(self, username: str, refresh_token: str) -> Mapping[str, str]: ...

    async def resend_code(self, username: str) -> None: ...

    async def initiate_password_reset(self, username: str) -> None:
        """Send a password reset code to the user's registered contact."""

    async def complete_password_reset(self, username: str, code: str, new_password: str) -> None: ...

    async def logout(self, access_token: str) -> None:
        """Revoke every session issued for the owner of ``access_token``."""


@runtime_checkable
class KeyManager(Protocol):
    """Encrypt and decrypt byte payloads with a managed key."""

    async def encrypt(self, plaintext: bytes) -> bytes: ...

    async def decrypt(self, ciphertext: bytes) -> bytes: ...


@runtime_checkable
class ObjectStorage(Protocol):
    """Store named bytes and report where they ended up."""

    async def put(self, name: str, data: bytes, content_type: str) -> str: ...


@runtime_checkable
class EmailSender(Protocol):
    """Deliver an HTML message to one or more recipients."""

    async def send(self, recipients: Sequence[str], subject: str, html: str) -> None: ...


async def call_provider(
    operation: Callable[[], Awaitable[T]],
    *,
    default_message: str,
    default_status: int = 500,
) -> T:
    """Await ``operation`` and re-raise any failure as a domain error.

    Args:
        operation (Callable[[], Awaitable[T]]): Zero-argument callable
            performing the provider call.
        default_message (str): Message used when the provider failure cannot
            be classified.
        default_status (int): HTTP status for unclassified failures.

    Returns:
        T: Whatever ``operation`` returns.

    Raises:
        AppError: The mapped provider failure, chained to the original.
    """

    try:
        return await operation()
    except Exception as exc:
        raise map_provider_error(exc, default_message, default_status) from exc


class FilesystemObjectStorage:
    """Object storage backed by a local directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _target(self, name: str) -> Path:
        relative = PurePosixPath(name)
        if not name or relative.is_absolute() or ".." in relative.parts:
            raise ValidationError(f"Invalid object name: {name!r}")
        return self.root.joinpath(*relative.parts)

    def _write(self, target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def put(self, name: str, data: bytes, content_type: str) -> str:
        target = self._target(name)
        await asyncio.to_thread(self._write, target, data)
        location = target.resolve().as_uri()
        log.info("Stored object '%s' (%s, %d bytes) at %s", name, content_type, len(data), location)
        return location


class EncryptingObjectStorage:
    """Encrypt payloads with a :class:`KeyManager` before storing them."""

    def __init__(self, storage: ObjectStorage, key_manager: KeyManager) -> None:
        self._storage = storage
        self._key_manager = key_manager

    async def put(self, name: str, data: bytes, content_type: str) -> str:
        ciphertext = await call_provider(
            lambda: self._key_manager.encrypt(data),
            default_message="Error encrypting object",
        )
        return await self._storage.put(name, ciphertext, content_type)


class SmtpEmailSender:
    """Send HTML mail through an SMTP relay."""

    def __init__(self, host: str, port: int, sender: str, *, timeout: float = 10.0) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.timeout = timeout

    def _build_message(self, recipients: Sequence[str], subject: str, html: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html, subtype="html")
        return message

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as client:
            client.send_message(message)

    async def send(self, recipients: Sequence[str], subject: str, html: str) -> None:
        if not recipients:
            raise ValidationError("At least one recipient is required")
        message = self._build_message(recipients, subject, html)
        await asyncio.to_thread(self._deliver, message)
        log.info("Sent '%s' to %s", subject, ", ".join(recipients))
