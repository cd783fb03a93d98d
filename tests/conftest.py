"""Shared fixtures for Magpie tests."""

import os
from unittest.mock import AsyncMock, patch

import pytest

from magpie.errors import ProviderError
from magpie.schemas.email import EmailRecord, ProviderLabel


class FakeGateway:
    """In-memory mail provider.

    Messages are paged in insertion order; page tokens are stringified
    offsets. Every call is recorded in ``calls`` as a tuple whose first
    element is the method name.
    """

    def __init__(
        self,
        messages: list[EmailRecord] | None = None,
        labels: dict[str, str] | None = None,
    ) -> None:
        self.messages: dict[str, EmailRecord] = {m.id: m for m in messages or []}
        self.labels: dict[str, str] = dict(labels or {})  # name -> id
        self.calls: list[tuple] = []
        self.apply_failures = 0
        self.remove_failures = 0
        self.fail_get: set[str] = set()
        self.list_error: Exception | None = None
        self.labels_error: Exception | None = None
        self.drop_on_apply = False
        self._next_label = 1

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    async def list_messages(self, query="", page_token=None, page_size=50):
        self.calls.append(("list_messages", query, page_token, page_size))
        if self.list_error:
            raise self.list_error
        ids = list(self.messages)
        start = int(page_token) if page_token else 0
        end = start + page_size
        return ids[start:end], (str(end) if end < len(ids) else None)

    async def count_messages(self, query="", label_ids=None):
        self.calls.append(("count_messages", query, tuple(label_ids or ())))
        if self.list_error:
            raise self.list_error
        wanted = set(label_ids or ())
        return sum(1 for m in self.messages.values() if wanted <= set(m.label_ids))

    async def get_message(self, message_id):
        self.calls.append(("get_message", message_id))
        if message_id in self.fail_get:
            raise ProviderError(f"cannot fetch {message_id}", status_code=500)
        return self.messages[message_id].model_copy(deep=True)

    async def list_labels(self):
        self.calls.append(("list_labels",))
        if self.labels_error:
            raise self.labels_error
        return [ProviderLabel(id=lid, name=name) for name, lid in self.labels.items()]

    async def create_label(self, name, color=None):
        self.calls.append(("create_label", name))
        if name not in self.labels:
            self.labels[name] = f"Label_{self._next_label}"
            self._next_label += 1
        return self.labels[name]

    async def apply_label(self, message_id, label_id):
        self.calls.append(("apply_label", message_id, label_id))
        if self.apply_failures:
            self.apply_failures -= 1
            raise ProviderError("transient apply failure", status_code=503)
        msg = self.messages.get(message_id)
        if msg and not self.drop_on_apply and label_id not in msg.label_ids:
            msg.label_ids.append(label_id)
        return True

    async def remove_label(self, message_id, label_id):
        self.calls.append(("remove_label", message_id, label_id))
        if self.remove_failures:
            self.remove_failures -= 1
            raise ProviderError("transient remove failure", status_code=503)
        msg = self.messages.get(message_id)
        if msg and label_id in msg.label_ids:
            msg.label_ids.remove(label_id)
        return True


def make_email(msg_id: str, subject: str = "Hello", **overrides) -> EmailRecord:
    defaults = dict(
        id=msg_id,
        thread_id=f"t-{msg_id}",
        subject=subject,
        sender="sender@example.com",
        body=f"Body of {subject}",
        snippet=subject,
        label_ids=["INBOX"],
    )
    defaults.update(overrides)
    return EmailRecord(**defaults)


@pytest.fixture(autouse=True)
def _no_sops(monkeypatch):
    """Ensure tests never try to invoke SOPS."""
    monkeypatch.setenv("MAGPIE_USE_SOPS", "false")


@pytest.fixture()
def no_sleep():
    """Skip retry backoff delays."""
    with patch("magpie.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


@pytest.fixture()
def project_root():
    """Return the project root path."""
    return os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
