"""Tests for mandate construction, hashing, signing and verification."""

import json

import pytest
from eth_account import Account

from covenant.accounts import caip10
from covenant.errors import (
    ConstructionError,
    CoreShapeMismatchError,
    DomainRequiredError,
    HashMismatchError,
    PayloadValidationError,
    SignatureInvalidError,
    SignatureMissingError,
    UnknownPrimitiveError,
)
from covenant.mandate import MANDATE_SCHEMA_VERSION, Mandate, Role, new_mandate_id
from covenant.primitives import SWAP_V1, PrimitiveRegistry, parse_swap_payload
from covenant.signing import EthAccountSigner, MessageSigning, SigAlg, TypedDataSigning
from covenant.timestamps import timestamp_in


DOMAIN = {"name": "Covenant", "version": "1", "chainId": 1}


def _swap_payload(recipient):
    return {
        "chainId": 1,
        "tokenIn": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        "tokenOut": "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599",
        "amountIn": "100000000",
        "minOut": "165000",
        "recipient": recipient,
        "deadline": timestamp_in(15 * 60),
    }


def _make_mandate(client=None, server=None, **kwargs):
    client = client or Account.create()
    server = server or Account.create()
    mandate = Mandate(
        client=caip10(1, client.address),
        server=caip10(1, server.address),
        deadline=kwargs.pop("deadline", timestamp_in(15 * 60)),
        intent="Swap 100 USDC for WBTC",
        **kwargs,
    )
    mandate.set_core(SWAP_V1, _swap_payload(client.address))
    return mandate


class TestConstruction:
    def test_defaults(self):
        mandate = _make_mandate()
        doc = mandate.to_dict()

        assert len(doc["mandateId"]) == 26
        assert doc["version"] == MANDATE_SCHEMA_VERSION
        assert doc["createdAt"].endswith("Z")
        assert "signatures" not in doc

    @pytest.mark.parametrize("missing", ["client", "server"])
    def test_requires_parties(self, missing):
        kwargs = {
            "client": "eip155:1:0x1111111111111111111111111111111111111111",
            "server": "eip155:1:0x2222222222222222222222222222222222222222",
            "deadline": timestamp_in(60),
        }
        kwargs[missing] = ""
        with pytest.raises(ConstructionError, match="client and server"):
            Mandate(**kwargs)

    def test_requires_deadline(self):
        with pytest.raises(ConstructionError, match="deadline"):
            Mandate(
                client="eip155:1:0x1111111111111111111111111111111111111111",
                server="eip155:1:0x2222222222222222222222222222222222222222",
            )

    def test_rejects_malformed_account_id(self):
        with pytest.raises(ConstructionError, match="client"):
            Mandate(client="0x1111", server="eip155:1:0x2222222222222222222222222222222222222222",
                    deadline=timestamp_in(60))

    def test_rejects_unparseable_deadline(self):
        with pytest.raises(ConstructionError, match="deadline"):
            Mandate(
                client="eip155:1:0x1111111111111111111111111111111111111111",
                server="eip155:1:0x2222222222222222222222222222222222222222",
                deadline="next tuesday",
            )

    def test_ids_sort_by_creation_time(self):
        first = new_mandate_id()
        second = new_mandate_id()
        assert first[:10] <= second[:10]


class TestSnapshotsAndHash:
    def test_to_dict_is_independent(self):
        mandate = _make_mandate()
        before = mandate.mandate_hash()

        snapshot = mandate.to_dict()
        snapshot["core"]["payload"]["amountIn"] = "1"
        snapshot["intent"] = "changed"
        mandate.core["payload"]["minOut"] = "1"

        assert mandate.mandate_hash() == before

    def test_round_trip_preserves_hash_and_signatures(self):
        server = Account.create()
        mandate = _make_mandate(server=server)
        mandate.sign_as_server(server)

        rebuilt = Mandate.from_json(mandate.to_json())

        assert rebuilt.mandate_hash() == mandate.mandate_hash()
        assert rebuilt.to_dict() == mandate.to_dict()
        assert rebuilt.verify_role(Role.SERVER).recovered == server.address

    def test_hash_ignores_signatures(self):
        server = Account.create()
        mandate = _make_mandate(server=server)
        before = mandate.mandate_hash()

        mandate.sign_as_server(server)

        assert mandate.mandate_hash() == before

    def test_round_trip_keeps_empty_signatures(self):
        doc = _make_mandate().to_dict()
        doc["signatures"] = {}

        assert Mandate.from_dict(doc).to_dict() == doc

    def test_from_dict_rejects_non_object(self):
        with pytest.raises(ConstructionError):
            Mandate.from_dict(["not", "a", "mandate"])

    def test_from_json_rejects_garbage(self):
        with pytest.raises(ConstructionError, match="not valid JSON"):
            Mandate.from_json("{nope")

    def test_from_dict_rejects_unknown_signature_role(self):
        doc = _make_mandate().to_dict()
        doc["signatures"] = {"auditorSig": {"alg": "eip191", "mandateHash": "0x" + "00" * 32,
                                            "signature": "0x00"}}
        with pytest.raises(ConstructionError, match="Unknown signature roles"):
            Mandate.from_dict(doc)


class TestCore:
    def test_unknown_kind_fails_on_assignment(self):
        mandate = _make_mandate()
        with pytest.raises(UnknownPrimitiveError):
            mandate.set_core("nope@1", {})

    def test_invalid_payload_leaves_core_untouched(self):
        mandate = _make_mandate()
        before = mandate.core

        with pytest.raises(PayloadValidationError):
            mandate.set_core(SWAP_V1, {"amountIn": "1"})
        assert mandate.core == before

    def test_core_as_kind_rejects_partial_payload(self):
        mandate = _make_mandate()
        doc = mandate.to_dict()
        del doc["core"]["payload"]["amountIn"]
        damaged = Mandate.from_dict(doc)

        assert damaged.is_kind(SWAP_V1)
        with pytest.raises(PayloadValidationError, match="amountIn"):
            damaged.core_as_kind(SWAP_V1)

    def test_core_as_and_try_core_as(self):
        mandate = _make_mandate()

        assert mandate.core_as(parse_swap_payload, SWAP_V1)["minOut"] == "165000"
        assert mandate.try_core_as(parse_swap_payload, "transfer@1") is None
        with pytest.raises(CoreShapeMismatchError):
            mandate.core_as(parse_swap_payload, "transfer@1")

    def test_try_core_as_returns_none_for_any_validator_error(self):
        mandate = _make_mandate()

        assert mandate.try_core_as(lambda payload: payload.missing_attribute) is None
        assert mandate.try_core_as(lambda payload: 1 / 0, SWAP_V1) is None

    def test_core_as_on_empty_core(self):
        mandate = Mandate(
            client="eip155:1:0x1111111111111111111111111111111111111111",
            server="eip155:1:0x2222222222222222222222222222222222222222",
            deadline=timestamp_in(60),
        )
        with pytest.raises(CoreShapeMismatchError, match="core missing"):
            mandate.core_as(parse_swap_payload)

    def test_injected_registry(self):
        registry = PrimitiveRegistry()
        registry.register("note@1", lambda payload: {"text": str(payload["text"])})
        mandate = Mandate(
            client="eip155:1:0x1111111111111111111111111111111111111111",
            server="eip155:1:0x2222222222222222222222222222222222222222",
            deadline=timestamp_in(60),
            registry=registry,
        )

        mandate.set_core("note@1", {"text": "hello", "extra": 1})

        assert mandate.core == {"kind": "note@1", "payload": {"text": "hello"}}
        with pytest.raises(UnknownPrimitiveError):
            mandate.set_core(SWAP_V1, {})


class TestSigning:
    def test_server_only_signature_verifies(self):
        server = Account.create()
        mandate = _make_mandate(server=server)

        signature = mandate.sign_as_server(server)
        result = mandate.verify_role("server")

        assert signature.alg is SigAlg.EIP191
        assert result.ok is True
        assert result.recovered == server.address
        assert result.recomputed_hash == mandate.mandate_hash()

    def test_missing_client_signature(self):
        server = Account.create()
        mandate = _make_mandate(server=server)
        mandate.sign_as_server(server)

        with pytest.raises(SignatureMissingError, match="clientSig missing"):
            mandate.verify_role(Role.CLIENT)

    def test_no_signatures_at_all(self):
        with pytest.raises(SignatureMissingError, match="no signatures"):
            _make_mandate().verify_role(Role.SERVER)

    def test_both_roles_eip712(self):
        client, server = Account.create(), Account.create()
        mandate = _make_mandate(client=client, server=server)

        mandate.sign_as_server(server, TypedDataSigning(DOMAIN))
        mandate.sign_as_client(client, TypedDataSigning(DOMAIN))
        result = mandate.verify_all(DOMAIN, DOMAIN)

        assert result.client.recovered == client.address
        assert result.server.recovered == server.address
        assert result.server.alg is SigAlg.EIP712

    def test_mixed_algorithms(self):
        client, server = Account.create(), Account.create()
        mandate = _make_mandate(client=client, server=server)

        mandate.sign_as_server(server, TypedDataSigning(DOMAIN))
        mandate.sign_as_client(EthAccountSigner(client), MessageSigning())

        result = mandate.verify_all(server_domain=DOMAIN)
        assert result.client.alg is SigAlg.EIP191

    def test_eip712_requires_domain_with_chain_id(self):
        with pytest.raises(DomainRequiredError):
            TypedDataSigning({"name": "Covenant"})
        with pytest.raises(DomainRequiredError):
            TypedDataSigning({"chainId": "1"})

    def test_eip712_verification_requires_domain(self):
        server = Account.create()
        mandate = _make_mandate(server=server)
        mandate.sign_as_server(server, TypedDataSigning(DOMAIN))

        with pytest.raises(DomainRequiredError):
            mandate.verify_role(Role.SERVER)

    def test_eip712_wrong_domain_recovers_other_address(self):
        server = Account.create()
        mandate = _make_mandate(server=server)
        mandate.sign_as_server(server, TypedDataSigning(DOMAIN))

        with pytest.raises(SignatureInvalidError):
            mandate.verify_role(Role.SERVER, {**DOMAIN, "chainId": 8453})

    def test_tampering_after_signing_is_detected(self):
        server = Account.create()
        mandate = _make_mandate(server=server)
        mandate.sign_as_server(server)

        doc = mandate.to_dict()
        doc["core"]["payload"]["minOut"] = "1"
        tampered = Mandate.from_dict(doc)

        with pytest.raises(HashMismatchError) as exc_info:
            tampered.verify_role(Role.SERVER)
        assert exc_info.value.recomputed_hash == tampered.mandate_hash()

    def test_set_core_after_signing_invalidates(self):
        client, server = Account.create(), Account.create()
        mandate = _make_mandate(client=client, server=server)
        mandate.sign_as_server(server)

        payload = _swap_payload(client.address)
        payload["minOut"] = "1"
        mandate.set_core(SWAP_V1, payload)

        with pytest.raises(HashMismatchError):
            mandate.verify_role(Role.SERVER)

    def test_wrong_signer_is_rejected(self):
        server, impostor = Account.create(), Account.create()
        mandate = _make_mandate(server=server)
        mandate.sign_as_server(impostor)

        with pytest.raises(SignatureInvalidError) as exc_info:
            mandate.verify_role(Role.SERVER)
        assert exc_info.value.recovered == impostor.address

    def test_resigning_overwrites(self):
        server, impostor = Account.create(), Account.create()
        mandate = _make_mandate(server=server)
        mandate.sign_as_server(impostor)
        mandate.sign_as_server(server)

        assert mandate.verify_role(Role.SERVER).recovered == server.address
        assert set(mandate.to_dict()["signatures"]) == {"serverSig"}

    def test_garbage_signature_is_invalid(self):
        server = Account.create()
        mandate = _make_mandate(server=server)
        mandate.sign_as_server(server)

        doc = mandate.to_dict()
        doc["signatures"]["serverSig"]["signature"] = "0xdeadbeef"

        with pytest.raises(SignatureInvalidError):
            Mandate.from_dict(doc).verify_role(Role.SERVER)

    def test_signature_wire_format(self):
        server = Account.create()
        mandate = _make_mandate(server=server)
        mandate.sign_as_server(server)

        sig = json.loads(mandate.to_json())["signatures"]["serverSig"]
        assert sig["alg"] == "eip191"
        assert sig["mandateHash"] == mandate.mandate_hash()
        assert sig["signature"].startswith("0x") and len(sig["signature"]) == 132
