"""
Verifier / Vault Service Tests
==============================

Kiểm thử máy trạng thái phía verifier, record store và luồng end-to-end
"""

import asyncio
import json

import pytest

from doc_integrity.auth import Principal, Role
from doc_integrity.documents import DocumentKind, DocumentRecord
from doc_integrity.exceptions import ChainError, DuplicateError
from doc_integrity.hashing import commit_identity
from doc_integrity.key_manager import KeyManager
from doc_integrity.ledger import InMemoryLedger
from doc_integrity.record_store import InMemoryRecordStore, JsonFileRecordStore
from doc_integrity.registry_client import HashRegistryClient
from doc_integrity.vault_service import VaultService
from doc_integrity.verifier import SessionState, VerificationSession


AUTHORITY = Principal(subject="registrar-1", role=Role.AUTHORITY)

ID_CARD = {
    "idNumber": "912345678V",
    "fullName": "JOHN DOE",
    "dateOfBirth": "1991-02-03",
    "issuedDate": "2020-01-01",
}

LICENSE = {
    "licenseNumber": "B1234567",
    "idNumber": "912345678V",
    "fullName": "John Doe",
    "dateOfBirth": "1991-02-03",
    "dateOfIssue": "2019-06-01",
    "dateOfExpiry": "2027-06-01",
    "vehicleClasses": "A, B1",
}


class CountingRegistry:
    """Registry stub answering from a fixed set of (identity, hash) pairs"""

    def __init__(self, valid_pairs=(), error=None):
        self.valid_pairs = set(valid_pairs)
        self.error = error
        self.calls = 0

    async def verify(self, identity_id, hash_hex):
        self.calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return (identity_id, hash_hex) in self.valid_pairs


class BlockingRegistry:
    """verify waits until released"""

    def __init__(self):
        self.calls = 0
        self.release = None

    async def verify(self, identity_id, hash_hex):
        self.calls += 1
        self.release = asyncio.Event()
        await self.release.wait()
        return True


class TestVerificationSession:
    """Test verifier state transitions"""

    def setup_method(self):
        self.record = DocumentRecord.create(DocumentKind.IDENTITY_CARD, ID_CARD)
        self.identity = commit_identity("912345678V")
        self.registry = CountingRegistry({(self.identity, self.record.fingerprint)})
        self.vault = VaultService(self.registry)
        self.key_manager = KeyManager()

    def test_plain_verified(self):
        url = self.vault.share(self.record, ["fullName", "idNumber"])
        session = VerificationSession(self.registry)

        assert session.state == SessionState.LOADING
        assert session.load(url) == SessionState.PLAIN

        result = asyncio.run(session.verify())
        assert result.state == SessionState.VERIFIED
        assert result.trusted is True
        assert result.is_valid is True
        assert result.identity_id == self.identity
        assert result.fields == {"Full Name": "JOHN DOE", "ID Number": "912345678V"}
        assert session.done is True
        print(f"✅ Session verified: {result.to_dict()['state']}")

    def test_unverified_keeps_data(self):
        tampered = self.record.with_fields({"fullName": "JANE DOE"})
        session = self.vault.open_session(self.vault.share(tampered, ["fullName", "idNumber"]))

        result = asyncio.run(session.verify())
        assert result.state == SessionState.UNVERIFIED
        assert result.trusted is False
        assert result.is_valid is False
        assert result.fields["Full Name"] == "JANE DOE"

    def test_encrypted_flow_with_retry(self):
        right = self.key_manager.generate_keypair()
        wrong = self.key_manager.generate_keypair()
        session = self.vault.open_session(
            self.vault.share(self.record, ["fullName", "idNumber"], recipient=right.public_key_pem)
        )

        assert session.state == SessionState.ENCRYPTED
        assert session.result().fields == {}
        assert session.result().was_encrypted is True

        # no key yet: verify does not reach the registry
        assert asyncio.run(session.verify()).state == SessionState.ENCRYPTED
        assert self.registry.calls == 0

        assert session.submit_key(wrong.private_key_pem) == SessionState.DECRYPTION_ERROR
        assert "PRIVATE KEY" not in session.error
        assert session.submit_key(right.private_key_pem) == SessionState.DECRYPTED
        assert session.error is None

        result = asyncio.run(session.verify())
        assert result.state == SessionState.VERIFIED
        assert result.was_encrypted is True
        print("✅ Wrong key recoverable, right key verified")

    def test_decode_error(self):
        session = self.vault.open_session("https://myvault-verify.vercel.app/verify?data=%21%21%21")

        assert session.state == SessionState.DECODE_ERROR
        assert session.done is True
        assert session.error
        with pytest.raises(RuntimeError):
            session.submit_key("anything")
        with pytest.raises(RuntimeError):
            session.load("again")

        assert asyncio.run(session.verify()).state == SessionState.DECODE_ERROR
        assert self.registry.calls == 0

    def test_identifier_not_disclosed(self):
        session = self.vault.open_session(self.vault.share(self.record, ["fullName", "dateOfBirth"]))

        result = asyncio.run(session.verify())
        assert result.state == SessionState.VERIFICATION_ERROR
        assert "ID Number" in result.error
        assert result.fields["Full Name"] == "JOHN DOE"
        assert self.registry.calls == 0

    def test_registry_error_keeps_data(self):
        registry = CountingRegistry(error=ChainError("Ledger node unreachable", transient=True))
        session = VerificationSession(registry)
        session.load(self.vault.share(self.record, ["fullName", "idNumber"]))

        result = asyncio.run(session.verify())
        assert result.state == SessionState.VERIFICATION_ERROR
        assert result.error.startswith("Unable to confirm")
        assert result.is_valid is None
        assert result.fields["ID Number"] == "912345678V"
        assert result.fingerprint == self.record.fingerprint
        print("✅ Registry failure shown as unable to confirm, data still displayed")

    def test_single_registry_call(self):
        session = self.vault.open_session(self.vault.share(self.record, ["idNumber"]))

        async def scenario():
            results = await asyncio.gather(session.verify(), session.verify(), session.verify())
            again = await session.verify()
            return results + [again]

        results = asyncio.run(scenario())
        assert self.registry.calls == 1
        assert all(r.state == SessionState.VERIFIED for r in results)

    def test_cancel_stops_state_changes(self):
        registry = BlockingRegistry()
        session = VerificationSession(registry)
        session.load(self.vault.share(self.record, ["idNumber"]))

        async def scenario():
            session.start_verification()
            while registry.release is None:
                await asyncio.sleep(0)
            session.cancel()
            registry.release.set()
            return await session.verify()

        result = asyncio.run(scenario())
        assert registry.calls == 1
        assert result.state == SessionState.VERIFYING
        assert result.is_valid is None
        assert session.start_verification() is session._verify_task

    def test_cancel_before_start(self):
        session = self.vault.open_session(self.vault.share(self.record, ["idNumber"]))
        session.cancel()

        result = asyncio.run(session.verify())
        assert result.state == SessionState.PLAIN
        assert self.registry.calls == 0

    def test_illegal_transition(self):
        session = VerificationSession(self.registry)

        with pytest.raises(RuntimeError):
            session._transition(SessionState.VERIFIED)

    def test_result_dict(self):
        session = self.vault.open_session(self.vault.share(self.record, ["fullName", "idNumber"]))
        data = asyncio.run(session.verify()).to_dict()

        assert data["state"] == "verified"
        assert data["trusted"] is True
        assert data["hash"] == self.record.fingerprint
        assert data["encrypted"] is False
        json.dumps(data)


class TestRecordStore:
    """Test holder-side storage"""

    def test_set_refreshes_record(self):
        store = InMemoryRecordStore()
        record = DocumentRecord.create(DocumentKind.IDENTITY_CARD, ID_CARD)
        before = record.updated_at

        store.put(record)
        loaded = store.get("id_card")

        assert loaded.fingerprint == record.fingerprint
        assert loaded.updated_at >= before
        assert store.keys() == ["id_card"]
        assert store.remove("id_card") is True
        assert store.remove("id_card") is False
        assert store.get("id_card") is None

    def test_json_file_store(self, tmp_path):
        path = tmp_path / "vault" / "records.json"
        store = JsonFileRecordStore(path)
        record = store.put(DocumentRecord.create(DocumentKind.IDENTITY_CARD, ID_CARD))

        # a tampered hash on disk is not trusted
        data = json.loads(path.read_text())
        data["id_card"]["hash"] = "00" * 32
        path.write_text(json.dumps(data))

        reopened = JsonFileRecordStore(path)
        assert reopened.get("id_card").fingerprint == record.fingerprint
        assert reopened.remove("id_card") is True
        assert JsonFileRecordStore(path).get("id_card") is None
        print("✅ JSON record store persists and recomputes fingerprints")


class TestVaultService:
    """Test issue / reissue / share / verify end to end"""

    def setup_method(self):
        self.ledger = InMemoryLedger()
        self.vault = VaultService(HashRegistryClient(self.ledger))

    def test_issue_share_verify(self):
        record = self.vault.save_record("id_card", ID_CARD)

        async def scenario():
            identity_id, receipt = await self.vault.issue(AUTHORITY, record)
            session = self.vault.open_session(self.vault.share(record, ["fullName", "idNumber"]))
            return identity_id, receipt, await session.verify()

        identity_id, receipt, result = asyncio.run(scenario())
        assert identity_id == commit_identity("912345678V")
        assert receipt.block_number == 1
        assert result.state == SessionState.VERIFIED

    def test_issue_twice_rejected(self):
        record = DocumentRecord.create(DocumentKind.IDENTITY_CARD, ID_CARD)

        async def scenario():
            await self.vault.issue(AUTHORITY, record)
            await self.vault.issue(AUTHORITY, record)

        with pytest.raises(DuplicateError):
            asyncio.run(scenario())

    def test_reissue_revokes_old_links(self):
        original = self.vault.save_record("id_card", ID_CARD)
        old_link = self.vault.share(original, ["idNumber"])

        async def scenario():
            await self.vault.issue(AUTHORITY, original)
            edited = self.vault.edit_record("id_card", {"issuedDate": "2024-05-05"})
            await self.vault.reissue(AUTHORITY, edited)
            new_link = self.vault.share(edited, ["idNumber"])
            old = await self.vault.open_session(old_link).verify()
            new = await self.vault.open_session(new_link).verify()
            return old, new

        old, new = asyncio.run(scenario())
        assert old.state == SessionState.UNVERIFIED
        assert new.state == SessionState.VERIFIED
        print("✅ Reissue revokes previously shared links")

    def test_licence_without_number_not_reported_forged(self):
        licence = self.vault.save_record("driving_license", LICENSE)

        async def scenario():
            identity_id, _ = await self.vault.issue(AUTHORITY, licence)
            with_number = self.vault.share(licence, ["fullName", "licenseNumber"])
            without_number = self.vault.share(
                licence, ["fullName", "idNumber", "vehicleClasses", "dateOfExpiry"]
            )
            return (
                identity_id,
                await self.vault.open_session(with_number).verify(),
                await self.vault.open_session(without_number).verify(),
            )

        identity_id, with_number, without_number = asyncio.run(scenario())
        assert identity_id == commit_identity("B1234567")
        assert with_number.state == SessionState.VERIFIED
        assert without_number.state == SessionState.VERIFICATION_ERROR
        assert "License Number was not disclosed" in without_number.error
        assert without_number.is_valid is None
        assert without_number.fields["Vehicle Classes"] == "A, B1"
        print("✅ Licence shared without its number is unconfirmed, not forged")

    def test_edit_missing_record(self):
        with pytest.raises(KeyError):
            self.vault.edit_record("driving_license", {"address": "x"})

    def test_verification_request_flow(self):
        record = self.vault.save_record("id_card", ID_CARD)
        descriptor, key_pair = self.vault.create_verification_request("City Bank", "id_card", "KYC")

        # holder scans the request QR
        scanned = type(descriptor).from_json(descriptor.to_json())
        link = self.vault.share_for_request(record, ["fullName", "idNumber"], scanned)

        async def scenario():
            await self.vault.issue(AUTHORITY, record)
            session = self.vault.open_session(link)
            assert session.state == SessionState.ENCRYPTED
            session.submit_key(key_pair.private_key_pem)
            return await session.verify()

        result = asyncio.run(scenario())
        assert result.state == SessionState.VERIFIED
        assert result.was_encrypted is True


def run_tests():
    """Run all tests without pytest's collection"""
    print("\n" + "=" * 60)
    print("VERIFIER TEST SUITE")
    print("=" * 60)

    return pytest.main([__file__, "-q"]) == 0


if __name__ == "__main__":
    success = run_tests()
    exit(0 if success else 1)
