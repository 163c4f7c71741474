"""
Tests for upload link management and password verification.
"""

import hashlib

import pytest

from invoicely.errors import BadRequestError, NotFoundError, UnauthorizedError
from invoicely.models.upload_link import UploadLink
from invoicely.uploads.links import (
    LINK_CODE_ALPHABET,
    UploadLinkService,
    generate_link_code,
    hash_password,
    is_legacy_hash,
    verify_password,
)


@pytest.fixture
def service(db, settings) -> UploadLinkService:
    return UploadLinkService(db=db, config=settings.upload_links)


def test_generated_codes_use_alphabet():
    code = generate_link_code(8)
    assert len(code) == 8
    assert set(code) <= set(LINK_CODE_ALPHABET)


def test_bcrypt_hash_is_salted():
    first = hash_password("hunter22", rounds=4)
    second = hash_password("hunter22", rounds=4)

    assert first != second
    assert verify_password("hunter22", first)
    assert verify_password("hunter22", second)
    assert not verify_password("hunter23", first)


def test_legacy_sha256_hash_still_verifies():
    legacy = hashlib.sha256(b"hunter22").hexdigest()

    assert is_legacy_hash(legacy)
    assert verify_password("hunter22", legacy)
    assert not verify_password("wrong", legacy)
    assert not is_legacy_hash(hash_password("hunter22", rounds=4))


def test_corrupt_hash_never_verifies():
    assert verify_password("hunter22", "not-a-hash") is False


@pytest.mark.asyncio
async def test_create_link_stores_hash_not_password(db, service):
    link = await service.create_link("user-1", "hunter22", name="  Suppliers  ")

    assert link.name == "Suppliers"
    assert len(link.link_code) == 8
    record = await db.get_upload_link_by_code(link.link_code)
    assert record.password_hash != "hunter22"
    assert record.password_hash.startswith("$2")


@pytest.mark.asyncio
async def test_create_link_rejects_bad_passwords(service):
    with pytest.raises(BadRequestError):
        await service.create_link("user-1", "abc")
    with pytest.raises(BadRequestError):
        await service.create_link("user-1", "x" * 73)


@pytest.mark.asyncio
async def test_verify_success(service):
    link = await service.create_link("user-1", "hunter22", name="Suppliers")

    verified = await service.verify(link.link_code, "hunter22")

    assert verified.user_id == "user-1"
    assert verified.name == "Suppliers"
    assert verified.link_code == link.link_code


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "link_code,password",
    [(None, "hunter22"), ("abcd1234", None), ("", ""), (None, None)],
)
async def test_verify_missing_fields(service, link_code, password):
    with pytest.raises(BadRequestError):
        await service.verify(link_code, password)


@pytest.mark.asyncio
async def test_verify_unknown_code(service):
    with pytest.raises(NotFoundError):
        await service.verify("zzzzzzzz", "hunter22")


@pytest.mark.asyncio
async def test_verify_inactive_link_is_not_found(service):
    link = await service.create_link("user-1", "hunter22")
    await service.set_link_active("user-1", link.id, False)

    with pytest.raises(NotFoundError):
        await service.verify(link.link_code, "hunter22")


@pytest.mark.asyncio
async def test_verify_wrong_password(service):
    link = await service.create_link("user-1", "hunter22")

    with pytest.raises(UnauthorizedError):
        await service.verify(link.link_code, "hunter23")


@pytest.mark.asyncio
async def test_legacy_hash_upgraded_on_successful_verify(db, service):
    legacy = hashlib.sha256(b"hunter22").hexdigest()
    await db.create_upload_link("user-1", "legacy01", legacy, "Old link")

    with pytest.raises(UnauthorizedError):
        await service.verify("legacy01", "wrong")
    assert (await db.get_upload_link_by_code("legacy01")).password_hash == legacy

    verified = await service.verify("legacy01", "hunter22")
    assert verified.user_id == "user-1"

    upgraded = (await db.get_upload_link_by_code("legacy01")).password_hash
    assert upgraded.startswith("$2")
    assert (await service.verify("legacy01", "hunter22")).user_id == "user-1"


@pytest.mark.asyncio
async def test_owner_management(service):
    link = await service.create_link("user-1", "hunter22")
    await service.create_link("user-2", "hunter22")

    assert [item.id for item in await service.list_links("user-1")] == [link.id]

    with pytest.raises(NotFoundError):
        await service.set_link_active("user-2", link.id, False)
    with pytest.raises(NotFoundError):
        await service.delete_link("user-2", link.id)

    await service.delete_link("user-1", link.id)
    assert await service.list_links("user-1") == []


def test_upload_url():
    link = UploadLink(id="l1", user_id="user-1", link_code="abcd1234")
    created = UploadLinkService.with_upload_url(link, "https://app.invoicely.test/")

    assert created.upload_url == "https://app.invoicely.test/upload/abcd1234"
