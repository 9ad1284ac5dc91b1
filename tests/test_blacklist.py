import pytest

from conftest import USER_ID, OTHER_USER_ID
from smsdesk.core.exceptions import ConflictError, ResourceNotFoundError
from smsdesk.services import blacklist_service


async def test_user_entry_blocks_only_that_user(db):
    await blacklist_service.add_number(USER_ID, "+33 6 12 34 56 01", reason="opt-out")

    assert await blacklist_service.is_blacklisted(USER_ID, "+33612345601")
    assert not await blacklist_service.is_blacklisted(OTHER_USER_ID, "+33612345601")


async def test_global_entry_blocks_everyone(db):
    await db.sms_blacklisted_numbers.insert_one(
        {"user_id": None, "phone_number": "+33612345609", "is_global": True}
    )

    assert await blacklist_service.is_blacklisted(USER_ID, "+33 612 345 609")
    assert await blacklist_service.is_blacklisted(OTHER_USER_ID, "+33612345609")

    numbers = await blacklist_service.list_numbers(USER_ID)
    assert [n["phone_number"] for n in numbers] == ["+33612345609"]


async def test_duplicate_number_conflicts(db):
    await blacklist_service.add_number(USER_ID, "+33612345601")
    with pytest.raises(ConflictError):
        await blacklist_service.add_number(USER_ID, "+33612345601")


async def test_global_entry_cannot_be_removed_by_user(db):
    await db.sms_blacklisted_numbers.insert_one(
        {"user_id": USER_ID, "phone_number": "+33612345609", "is_global": True}
    )
    with pytest.raises(ResourceNotFoundError):
        await blacklist_service.remove_number(USER_ID, "+33612345609")

    await blacklist_service.add_number(USER_ID, "+33612345601")
    assert await blacklist_service.remove_number(USER_ID, "+33612345601")
    assert not await blacklist_service.is_blacklisted(USER_ID, "+33612345601")


async def test_keyword_substring_match_is_case_insensitive(db):
    await blacklist_service.add_keyword("casino")

    check = await blacklist_service.check_message("Visit our CASINOS tonight")
    assert check.blocked
    assert check.matched_keywords == ["casino"]

    keyword = await db.sms_keyword_blacklist.find_one({"keyword": "casino"})
    assert keyword["trigger_count"] == 1
    assert keyword["last_triggered_at"] is not None


async def test_exact_match_keyword_needs_whole_word(db):
    await blacklist_service.add_keyword("loan", is_exact_match=True)

    assert not (await blacklist_service.check_message("Reloaned items")).blocked
    assert (await blacklist_service.check_message("Cheap LOAN today")).blocked


async def test_case_sensitive_keyword(db):
    await blacklist_service.add_keyword("FREE", is_case_sensitive=True)

    assert not (await blacklist_service.check_message("free delivery")).blocked
    assert (await blacklist_service.check_message("FREE delivery")).blocked


async def test_inactive_keywords_are_ignored(db):
    await db.sms_keyword_blacklist.insert_one({"keyword": "crypto", "is_active": False})
    assert not (await blacklist_service.check_message("crypto news")).blocked


async def test_duplicate_keyword_conflicts(db):
    await blacklist_service.add_keyword("casino")
    with pytest.raises(ConflictError):
        await blacklist_service.add_keyword("casino")
