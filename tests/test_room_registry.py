import pytest

from errors import StoreUnavailable


@pytest.mark.asyncio
async def test_join_creates_room_lazily(rooms):
    assert await rooms.members("r1") == set()

    await rooms.join("r1", "c1", "alice")

    assert await rooms.members("r1") == {"alice"}
    assert await rooms.member_connections("r1") == {"c1": "alice"}
    assert await rooms.rooms_for("c1") == {"r1"}


@pytest.mark.asyncio
async def test_join_twice_is_a_noop(rooms):
    assert await rooms.join("r1", "c1", "alice") is True
    assert await rooms.join("r1", "c1", "alice") is True

    assert await rooms.member_connections("r1") == {"c1": "alice"}


@pytest.mark.asyncio
async def test_leave_when_absent_is_safe(rooms):
    assert await rooms.leave("r1", "c1", "alice") is False
    assert await rooms.members("r1") == set()


@pytest.mark.parametrize(
    "operations, expected",
    [
        (["join"], {"alice"}),
        (["join", "leave"], set()),
        (["leave", "join"], {"alice"}),
        (["join", "join", "leave"], set()),
        (["join", "leave", "leave", "join"], {"alice"}),
        (["leave", "leave"], set()),
    ],
)
@pytest.mark.asyncio
async def test_membership_is_net_effect_of_operations(rooms, operations, expected):
    for op in operations:
        if op == "join":
            await rooms.join("r1", "c1", "alice")
        else:
            await rooms.leave("r1", "c1", "alice")

    assert await rooms.members("r1") == expected
    assert set((await rooms.member_connections("r1")).values()) == expected


@pytest.mark.asyncio
async def test_leave_keeps_user_while_another_device_is_joined(rooms):
    await rooms.join("r1", "phone", "alice")
    await rooms.join("r1", "laptop", "alice")

    await rooms.leave("r1", "phone", "alice")

    assert await rooms.members("r1") == {"alice"}
    assert await rooms.member_connections("r1") == {"laptop": "alice"}


@pytest.mark.asyncio
async def test_leave_keeping_membership_only_drops_the_connection(rooms):
    await rooms.join("r1", "c1", "bob")

    await rooms.leave("r1", "c1", "bob", keep_membership=True)

    assert await rooms.member_connections("r1") == {}
    assert await rooms.is_member("r1", "bob") is True


@pytest.mark.asyncio
async def test_detach_connection_removes_it_from_every_room(rooms):
    await rooms.join("r1", "c1", "bob")
    await rooms.join("r2", "c1", "bob")
    await rooms.join("r2", "c2", "carol")

    detached = await rooms.detach_connection("c1")

    assert detached == {"r1", "r2"}
    assert await rooms.member_connections("r1") == {}
    assert await rooms.member_connections("r2") == {"c2": "carol"}
    assert await rooms.rooms_for("c1") == set()
    # bob is still a member and will have messages queued
    assert await rooms.members("r2") == {"bob", "carol"}


@pytest.mark.asyncio
async def test_store_outage_raises_store_unavailable(rooms, fake_server):
    fake_server.connected = False

    with pytest.raises(StoreUnavailable):
        await rooms.join("r1", "c1", "alice")
    with pytest.raises(StoreUnavailable):
        await rooms.members("r1")
