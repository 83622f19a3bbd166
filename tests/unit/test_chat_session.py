import asyncio
from datetime import timedelta, timezone

import pytest

from campuslink.domain.chat.exceptions import ChatError, LoadError, SendError
from campuslink.domain.chat.inbox import ChatListService
from campuslink.domain.chat.session import ChatSessionController, SessionState, open_chat
from campuslink.infra.gateway import GatewayError, InMemoryGateway

CONNECTION_ID = "conn-ab"


class HeldGateway(InMemoryGateway):
    """Holds message inserts until the test releases them, optionally failing."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.release = asyncio.Event()
        self.fail_inserts = False

    async def insert(self, table, row):
        if table == "messages":
            await self.release.wait()
            if self.fail_inserts:
                raise GatewayError("timeout")
        return await super().insert(table, row)


@pytest.fixture
def held_gateway(clock):
    return HeldGateway(clock=clock)


def _seed_chat(gateway, clock, status="accepted"):
    gateway.seed(
        "profiles",
        [
            {"id": "alice", "full_name": "Alice Martin"},
            {"id": "bob", "full_name": "Bob Tremblay", "major": "History"},
        ],
    )
    gateway.seed(
        "connections",
        [
            {
                "id": CONNECTION_ID,
                "requester_id": "alice",
                "receiver_id": "bob",
                "status": status,
                "mode_context": "study",
                "request_message": "",
                "created_at": clock() - timedelta(days=1),
                "updated_at": clock() - timedelta(days=1),
            }
        ],
    )


def _controller(gateway, clock, user_id="alice"):
    return ChatSessionController(gateway, user_id, clock=clock, typing_idle_seconds=0.05)


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_mount_loads_history_presence_and_subscriptions(gateway, clock):
    _seed_chat(gateway, clock)
    controller = _controller(gateway, clock)

    await controller.mount(CONNECTION_ID)

    assert controller.state is SessionState.READY
    assert controller.peer.user_id == "bob"
    assert controller.peer_profile.first_name == "Bob"
    assert gateway.subscription_count == 2
    presence = await gateway.read("user_presence", {"user_id": "alice"})
    assert presence[0]["current_chat_id"] == CONNECTION_ID
    assert presence[0]["is_online"] is True


@pytest.mark.asyncio
async def test_mount_marks_unread_peer_messages_read(gateway, clock):
    _seed_chat(gateway, clock)
    gateway.seed(
        "messages",
        [
            {"id": "m1", "connection_id": CONNECTION_ID, "sender_id": "bob", "content": "hey", "created_at": clock() - timedelta(minutes=3), "is_read": False},
            {"id": "m2", "connection_id": CONNECTION_ID, "sender_id": "bob", "content": "you there?", "created_at": clock() - timedelta(minutes=2), "is_read": False},
        ],
    )
    controller = _controller(gateway, clock)

    await controller.mount(CONNECTION_ID)

    rows = await gateway.read("messages", {"connection_id": CONNECTION_ID})
    assert all(row["is_read"] for row in rows)
    assert controller.store.unread_count == 0


@pytest.mark.asyncio
async def test_send_shows_optimistic_entry_until_confirmed(held_gateway, clock):
    _seed_chat(held_gateway, clock)
    controller = _controller(held_gateway, clock)
    await controller.mount(CONNECTION_ID)

    task = asyncio.create_task(controller.send("hello"))
    await _settle()

    assert len(controller.messages) == 1
    assert controller.messages[0].is_optimistic is True
    assert controller.sending is True

    held_gateway.release.set()
    confirmed = await task

    assert len(controller.messages) == 1
    assert controller.messages[0].id == confirmed.id
    assert controller.messages[0].is_optimistic is False
    assert controller.store.optimistic == []
    assert controller.sending is False


@pytest.mark.asyncio
async def test_failed_send_rolls_back_and_restores_draft(held_gateway, clock):
    _seed_chat(held_gateway, clock)
    controller = _controller(held_gateway, clock)
    await controller.mount(CONNECTION_ID)
    held_gateway.fail_inserts = True
    controller.draft = "test"

    task = asyncio.create_task(controller.send())
    await _settle()
    assert len(controller.messages) == 1
    assert controller.draft == ""

    held_gateway.release.set()
    with pytest.raises(SendError) as excinfo:
        await task

    assert excinfo.value.draft == "test"
    assert controller.messages == []
    assert controller.draft == "test"


@pytest.mark.asyncio
async def test_failed_send_keeps_newer_draft(held_gateway, clock):
    _seed_chat(held_gateway, clock)
    controller = _controller(held_gateway, clock)
    await controller.mount(CONNECTION_ID)
    held_gateway.fail_inserts = True

    task = asyncio.create_task(controller.send("first"))
    await _settle()
    controller.draft = "second thoughts"
    held_gateway.release.set()
    with pytest.raises(SendError):
        await task

    assert controller.draft == "second thoughts"


@pytest.mark.asyncio
async def test_blank_send_is_ignored(gateway, clock):
    _seed_chat(gateway, clock)
    controller = _controller(gateway, clock)
    await controller.mount(CONNECTION_ID)

    assert await controller.send("   ") is None
    assert await gateway.count("messages", {}) == 0
    assert controller.messages == []


@pytest.mark.asyncio
async def test_send_requires_ready_session(gateway, clock):
    controller = _controller(gateway, clock)

    with pytest.raises(ChatError) as excinfo:
        await controller.send("hello")
    assert excinfo.value.reason == "not_ready"


@pytest.mark.asyncio
async def test_send_clears_own_typing_flag(gateway, clock):
    _seed_chat(gateway, clock)
    controller = _controller(gateway, clock)
    await controller.mount(CONNECTION_ID)

    await controller.keystroke("hel")
    assert (await gateway.read("user_presence", {"user_id": "alice"}))[0]["is_typing"] is True

    await controller.send("hello")

    assert (await gateway.read("user_presence", {"user_id": "alice"}))[0]["is_typing"] is False


@pytest.mark.asyncio
async def test_peer_typing_and_presence_are_mirrored(gateway, clock):
    _seed_chat(gateway, clock)
    controller = _controller(gateway, clock)
    await controller.mount(CONNECTION_ID)
    assert controller.peer_online is False

    await gateway.upsert(
        "user_presence",
        {"user_id": "bob", "is_online": True, "current_chat_id": CONNECTION_ID, "is_typing": True, "last_seen": clock()},
    )
    assert controller.peer_online is True
    assert controller.peer_typing is True

    clock.advance(seconds=1)
    await gateway.upsert(
        "user_presence",
        {"user_id": "bob", "is_online": True, "current_chat_id": "conn-bc", "is_typing": True, "last_seen": clock()},
    )
    assert controller.peer_typing is False


@pytest.mark.asyncio
async def test_peer_message_arrives_live(gateway, clock):
    _seed_chat(gateway, clock)
    controller = _controller(gateway, clock)
    await controller.mount(CONNECTION_ID)

    bob = _controller(gateway, clock, user_id="bob")
    await bob.mount(CONNECTION_ID)
    await bob.send("meet at 3?")

    assert [m.content for m in controller.messages] == ["meet at 3?"]
    assert controller.messages[0].is_read is True
    assert [m.content for m in bob.messages] == ["meet at 3?"]


@pytest.mark.asyncio
async def test_mount_refuses_pending_connection(gateway, clock):
    _seed_chat(gateway, clock, status="pending")
    controller = _controller(gateway, clock)

    with pytest.raises(LoadError) as excinfo:
        await controller.mount(CONNECTION_ID)

    assert excinfo.value.reason == "not_accepted"
    assert controller.state is SessionState.IDLE
    assert gateway.subscription_count == 0


@pytest.mark.asyncio
async def test_mount_unknown_connection(gateway, clock):
    controller = _controller(gateway, clock)

    with pytest.raises(LoadError) as excinfo:
        await controller.mount("missing")

    assert excinfo.value.reason == "connection_not_found"


@pytest.mark.asyncio
async def test_load_failure_leaves_nothing_subscribed_and_allows_retry(gateway, clock, monkeypatch):
    _seed_chat(gateway, clock)
    controller = _controller(gateway, clock)
    original_read = gateway.read

    async def read_without_messages(table, filters, **kwargs):
        if table == "messages":
            raise GatewayError("timeout")
        return await original_read(table, filters, **kwargs)

    monkeypatch.setattr(gateway, "read", read_without_messages)

    with pytest.raises(LoadError) as excinfo:
        await controller.mount(CONNECTION_ID)

    assert excinfo.value.reason == "history_unavailable"
    assert controller.state is SessionState.IDLE
    assert controller.error is excinfo.value
    assert gateway.subscription_count == 0
    assert await gateway.read("user_presence", {"user_id": "alice"}) == []

    monkeypatch.setattr(gateway, "read", original_read)
    await controller.mount(CONNECTION_ID)
    assert controller.state is SessionState.READY
    assert controller.error is None


@pytest.mark.asyncio
async def test_mount_twice_is_rejected(gateway, clock):
    _seed_chat(gateway, clock)
    controller = _controller(gateway, clock)
    await controller.mount(CONNECTION_ID)

    with pytest.raises(ChatError) as excinfo:
        await controller.mount(CONNECTION_ID)
    assert excinfo.value.reason == "invalid_state"


@pytest.mark.asyncio
async def test_unmount_releases_everything(gateway, clock):
    _seed_chat(gateway, clock)
    controller = _controller(gateway, clock)
    await controller.mount(CONNECTION_ID)
    await controller.keystroke("typing away")

    await controller.unmount()
    await controller.unmount()

    assert controller.state is SessionState.CLOSED
    assert gateway.subscription_count == 0
    presence = (await gateway.read("user_presence", {"user_id": "alice"}))[0]
    assert presence["current_chat_id"] is None
    assert presence["is_typing"] is False
    assert presence["is_online"] is True


@pytest.mark.asyncio
async def test_unmount_during_load_releases_subscriptions(gateway, clock, monkeypatch):
    _seed_chat(gateway, clock)
    controller = _controller(gateway, clock)
    gate = asyncio.Event()
    original_read = gateway.read

    async def slow_history(table, filters, **kwargs):
        if table == "messages":
            await gate.wait()
        return await original_read(table, filters, **kwargs)

    monkeypatch.setattr(gateway, "read", slow_history)

    mount = asyncio.create_task(controller.mount(CONNECTION_ID))
    await _settle()
    assert controller.state is SessionState.LOADING
    await controller.unmount()
    gate.set()
    await mount

    assert controller.state is SessionState.CLOSED
    assert gateway.subscription_count == 0


@pytest.mark.asyncio
async def test_send_result_after_unmount_is_dropped(held_gateway, clock):
    _seed_chat(held_gateway, clock)
    controller = _controller(held_gateway, clock)
    await controller.mount(CONNECTION_ID)

    task = asyncio.create_task(controller.send("bye"))
    await _settle()
    await controller.unmount()
    held_gateway.release.set()

    assert await task is None
    assert await held_gateway.count("messages", {}) == 1


@pytest.mark.asyncio
async def test_on_unload_marks_offline(gateway, clock):
    _seed_chat(gateway, clock)
    controller = _controller(gateway, clock)
    await controller.mount(CONNECTION_ID)

    await controller.on_unload()

    presence = (await gateway.read("user_presence", {"user_id": "alice"}))[0]
    assert presence["is_online"] is False


@pytest.mark.asyncio
async def test_open_chat_unmounts_on_error(gateway, clock):
    _seed_chat(gateway, clock)

    with pytest.raises(RuntimeError):
        async with open_chat(gateway, "alice", CONNECTION_ID, clock=clock) as controller:
            assert controller.state is SessionState.READY
            raise RuntimeError("screen crashed")

    assert controller.state is SessionState.CLOSED
    assert gateway.subscription_count == 0


@pytest.mark.asyncio
async def test_grouped_transcript(gateway, clock):
    _seed_chat(gateway, clock)
    gateway.seed(
        "messages",
        [
            {"id": "m1", "connection_id": CONNECTION_ID, "sender_id": "bob", "content": "yesterday", "created_at": clock() - timedelta(days=1), "is_read": True},
            {"id": "m2", "connection_id": CONNECTION_ID, "sender_id": "alice", "content": "today", "created_at": clock() - timedelta(minutes=1), "is_read": True},
        ],
    )
    controller = _controller(gateway, clock)
    await controller.mount(CONNECTION_ID)

    groups = controller.grouped(tz=timezone.utc)

    assert [[m.id for m in g.messages] for g in groups] == [["m1"], ["m2"]]


def _peer_row(content):
    return {
        "connection_id": CONNECTION_ID,
        "sender_id": "bob",
        "content": content,
        "message_type": "text",
        "is_read": False,
    }


@pytest.mark.asyncio
async def test_second_screen_replaces_first_screens_subscriptions(gateway, clock):
    _seed_chat(gateway, clock)
    first = _controller(gateway, clock)
    second = _controller(gateway, clock)

    await first.mount(CONNECTION_ID)
    await second.mount(CONNECTION_ID)
    assert gateway.subscription_count == 2

    await first.unmount()
    assert gateway.subscription_count == 2
    presence = (await gateway.read("user_presence", {"user_id": "alice"}))[0]
    assert presence["current_chat_id"] == CONNECTION_ID

    await gateway.insert("messages", _peer_row("still here"))
    assert [m.content for m in second.messages] == ["still here"]
    assert first.messages == []

    await second.unmount()
    assert gateway.subscription_count == 0


@pytest.mark.asyncio
async def test_message_sent_while_joining_is_not_lost(gateway, clock, monkeypatch):
    _seed_chat(gateway, clock)
    controller = _controller(gateway, clock)
    original_announce = controller.tracker.announce

    async def announce_after_peer_writes(connection_id):
        await gateway.insert("messages", _peer_row("are you there?"))
        return await original_announce(connection_id)

    monkeypatch.setattr(controller.tracker, "announce", announce_after_peer_writes)

    await controller.mount(CONNECTION_ID)

    assert [m.content for m in controller.messages] == ["are you there?"]
    assert controller.messages[0].is_read is True


@pytest.mark.asyncio
async def test_message_sent_during_history_read_appears_once(gateway, clock, monkeypatch):
    _seed_chat(gateway, clock)
    controller = _controller(gateway, clock)
    original_read = gateway.read

    async def read_racing_a_send(table, filters, **kwargs):
        if table == "messages":
            monkeypatch.setattr(gateway, "read", original_read)
            await gateway.insert("messages", _peer_row("just in time"))
        return await original_read(table, filters, **kwargs)

    monkeypatch.setattr(gateway, "read", read_racing_a_send)

    await controller.mount(CONNECTION_ID)

    assert [m.content for m in controller.messages] == ["just in time"]
    assert controller.store.unread_count == 0


@pytest.mark.asyncio
async def test_mount_zeroes_chat_list_badge(gateway, clock):
    _seed_chat(gateway, clock)
    gateway.seed(
        "messages",
        [
            {"id": "m1", "connection_id": CONNECTION_ID, "sender_id": "alice", "content": "lunch?", "created_at": clock() - timedelta(minutes=3), "is_read": False},
        ],
    )
    chat_list = ChatListService(gateway, clock=clock)
    before = await chat_list.load("bob")
    assert before.conversations[0].unread_count == 1

    controller = ChatSessionController(gateway, "bob", clock=clock, chat_list=chat_list)
    await controller.mount(CONNECTION_ID)

    after = await chat_list.load("bob")
    assert after.conversations[0].unread_count == 0
    assert after.total_unread == 0
