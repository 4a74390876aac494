"""Tests for the user directory."""

import asyncio

import pytest

from conftest import ADMIN_ID, OTHER_MODEL
from llm_chat_bot.ai.catalog import DEFAULT_MODEL
from llm_chat_bot.errors import AuthorizationError, ModelError, NotFoundError, Operation


@pytest.mark.asyncio
async def test_first_contact_creates_user(users):
    user = await users.find_or_create(500, "carol")

    assert user.telegram_id == 500
    assert user.username == "carol"
    assert not user.is_admin
    assert not user.is_whitelisted
    assert user.default_model == DEFAULT_MODEL
    assert not await users.check_access(500)


@pytest.mark.asyncio
async def test_find_or_create_is_idempotent(users):
    first = await users.find_or_create(500, "carol")
    second = await users.find_or_create(500, "carol_renamed")

    assert second.id == first.id
    assert second.username == "carol_renamed"
    stored = await users.get(first.id)
    assert stored.username == "carol_renamed"


@pytest.mark.asyncio
async def test_configured_admin(users):
    admin = await users.find_or_create(ADMIN_ID, "root")

    assert admin.is_admin
    assert admin.is_whitelisted
    assert await users.check_access(ADMIN_ID)
    assert [u.telegram_id for u in await users.list_admins()] == [ADMIN_ID]


@pytest.mark.asyncio
async def test_whitelisting(users):
    await users.find_or_create(500, "carol")

    await users.set_whitelisted(500, True)
    assert await users.check_access(500)
    assert [u.telegram_id for u in await users.list_whitelisted()] == [500]

    await users.set_whitelisted(500, False)
    assert not await users.check_access(500)


@pytest.mark.asyncio
async def test_admin_cannot_be_removed(users):
    await users.find_or_create(ADMIN_ID, "root")

    with pytest.raises(AuthorizationError):
        await users.set_whitelisted(ADMIN_ID, False)


@pytest.mark.asyncio
async def test_whitelist_unknown_user(users):
    with pytest.raises(NotFoundError):
        await users.set_whitelisted(999, True)


@pytest.mark.asyncio
async def test_unknown_user_has_no_access(users):
    assert not await users.check_access(999)
    assert await users.get_by_telegram_id(999) is None


@pytest.mark.asyncio
async def test_update_preferences(users):
    await users.find_or_create(500, "carol")

    user = await users.update_preferences(500, default_model=OTHER_MODEL, notifications=False)

    assert user.default_model == OTHER_MODEL
    stored = await users.get_by_telegram_id(500)
    assert stored.default_model == OTHER_MODEL
    assert stored.notifications is False


@pytest.mark.asyncio
async def test_update_preferences_rejects_unknown_model(users):
    await users.find_or_create(500, "carol")

    with pytest.raises(ModelError):
        await users.update_preferences(500, default_model="acme/not-a-model")


@pytest.mark.asyncio
async def test_update_last_active(users):
    user = await users.find_or_create(500, "carol")

    await users.update_last_active(500)

    stored = await users.get(user.id)
    assert stored.last_active_at >= user.last_active_at


@pytest.mark.asyncio
async def test_lookup_ignores_rolled_back_update(db, users):
    user = await users.find_or_create(500, "carol")
    written = asyncio.Event()

    async def aborted_rename():
        with pytest.raises(RuntimeError):
            async with db.transaction(Operation.DB_UPDATE) as conn:
                await conn.execute(
                    "UPDATE users SET username = ?, is_whitelisted = 1 WHERE id = ?",
                    ("mallory", user.id),
                )
                written.set()
                await asyncio.sleep(0.05)
                raise RuntimeError("abort")

    async def lookup_during_update():
        await written.wait()
        return await users.get_by_telegram_id(500)

    _, seen = await asyncio.gather(aborted_rename(), lookup_during_update())

    assert seen.username == "carol"
    assert not seen.is_whitelisted
