import base64

import pytest

from storage_gateway.exceptions import CorruptedDataError, EncryptionError, KeyNotFoundError
from storage_gateway.models import EncryptedData
from storage_gateway.repositories import InMemoryKeyStore
from storage_gateway.security import (
    AesGcmCipher,
    CredentialEncryptionService,
    EncryptionService,
    PathEncryptionService,
    decode_master_key,
    generate_master_key,
    validate_master_key,
)

cipher = AesGcmCipher()


def test_round_trip_restores_plaintext():
    key = cipher.generate_key_bytes()
    data = cipher.encrypt("files-2024-03/2024/3/5/users/u/f/report.pdf", key)

    assert data.algorithm == "AES-256-GCM"
    assert len(data.iv) == 12
    assert cipher.decrypt(data, key) == b"files-2024-03/2024/3/5/users/u/f/report.pdf"


def test_same_plaintext_encrypts_differently():
    key = cipher.generate_key_bytes()
    assert cipher.encrypt("path", key).serialize() != cipher.encrypt("path", key).serialize()


def test_wrong_key_fails():
    data = cipher.encrypt("secret path", cipher.generate_key_bytes())
    with pytest.raises(EncryptionError):
        cipher.decrypt(data, cipher.generate_key_bytes())


def test_tampered_ciphertext_fails():
    key = cipher.generate_key_bytes()
    data = cipher.encrypt("secret path", key)
    tampered = EncryptedData(
        algorithm=data.algorithm,
        iv=data.iv,
        ciphertext=data.ciphertext[:-1] + bytes([data.ciphertext[-1] ^ 1]),
    )
    with pytest.raises(EncryptionError):
        cipher.decrypt(tampered, key)


def test_foreign_algorithm_tag_is_rejected():
    key = cipher.generate_key_bytes()
    data = cipher.encrypt("x", key)
    with pytest.raises(EncryptionError):
        cipher.decrypt(data.model_copy(update={"algorithm": "AES-128-CBC"}), key)


def test_short_key_is_rejected():
    with pytest.raises(EncryptionError):
        cipher.encrypt("x", b"short")


def test_serialized_format():
    data = cipher.encrypt("x", cipher.generate_key_bytes())
    algorithm, iv_b64, ct_b64 = data.serialize().split(":")

    assert algorithm == "AES-256-GCM"
    assert base64.b64decode(iv_b64) == data.iv
    assert EncryptedData.deserialize(data.serialize()) == data


@pytest.mark.parametrize("blob", ["", "AES-256-GCM", "AES-256-GCM:abc", "AES-256-GCM:!!!:???", "::"])
def test_malformed_blob_is_corrupted(blob):
    with pytest.raises(CorruptedDataError):
        EncryptedData.deserialize(blob)


def test_key_wrapping_round_trip():
    master = decode_master_key(generate_master_key())
    key = cipher.generate_key_bytes()
    wrapped = cipher.wrap_key(key, master)

    assert cipher.unwrap_key(wrapped, master) == key
    with pytest.raises(EncryptionError):
        cipher.unwrap_key(wrapped, decode_master_key(generate_master_key()))


def test_master_key_validation():
    assert validate_master_key(generate_master_key())
    assert not validate_master_key(None)
    assert not validate_master_key("not base64!")
    assert not validate_master_key(base64.b64encode(b"16 bytes only...").decode())
    with pytest.raises(EncryptionError):
        decode_master_key("")


@pytest.mark.asyncio
async def test_encryption_service_uses_key_refs():
    # --- ARRANGE ---
    service = EncryptionService(InMemoryKeyStore())
    key_ref = await service.generate_key()

    # --- ACT ---
    blob = await service.encrypt("bucket/key", key_ref)

    # --- ASSERT ---
    assert key_ref.startswith("key-")
    assert "bucket/key" not in blob
    assert await service.decrypt(blob, key_ref) == "bucket/key"
    with pytest.raises(KeyNotFoundError):
        await service.decrypt(blob, "key-missing")


@pytest.mark.asyncio
async def test_key_store_rejects_duplicates_and_overflow():
    store = InMemoryKeyStore(max_keys=1)
    key = await store.generate_key("key-a")

    assert key.vault_id == InMemoryKeyStore.VAULT_ID
    assert await store.has_key("key-a")
    with pytest.raises(EncryptionError):
        await store.generate_key("key-a")
    with pytest.raises(EncryptionError):
        await store.generate_key("key-b")


@pytest.mark.asyncio
async def test_path_encryption_generates_key_per_file():
    paths = PathEncryptionService(EncryptionService(InMemoryKeyStore()))

    first = await paths.encrypt_path("bucket/a")
    second = await paths.encrypt_path("bucket/b")

    assert first.key_ref != second.key_ref
    assert await paths.decrypt_path(first.encrypted_path, first.key_ref) == "bucket/a"
    # ключ чужого файла не подходит
    with pytest.raises(EncryptionError):
        await paths.decrypt_path(first.encrypted_path, second.key_ref)


@pytest.mark.asyncio
async def test_credentials_key_is_created_lazily():
    store = InMemoryKeyStore()
    credentials = CredentialEncryptionService(EncryptionService(store), key_ref="key-creds")

    assert await credentials.encrypt_credential(None) is None
    assert not await store.has_key("key-creds")

    encrypted = await credentials.encrypt_credential("minioadmin")

    assert await store.has_key("key-creds")
    assert encrypted != "minioadmin"
    assert await credentials.decrypt_credential(encrypted) == "minioadmin"
