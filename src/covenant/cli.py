"""
Covenant CLI — negotiate, sign and verify mandates.

Commands:
    covenant create      Create a new unsigned mandate
    covenant core        Set the mandate's typed core payload
    covenant sign        Sign a mandate as client or server
    covenant verify      Verify one or both role signatures
    covenant inspect     Show canonical form and hash
    covenant attest      Third-party verification with optional receipt
    covenant store       Put/get mandates in the local blob store
    covenant primitives  List registered payload kinds
    covenant audit       View audit trail
    covenant demo        Run the full offer/countersign/attest flow
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, Optional

import click
from click.core import ParameterSource
from eth_account import Account

from . import __version__
from .audit import AuditTrail, EventType
from .blob_store import LocalBlobStore
from .errors import AuditChainError, CovenantError
from .mandate import Mandate, Role
from .negotiation import ClientParty, ServerParty
from .primitives import SWAP_V1, default_registry
from .signing import EthAccountSigner, SigAlg, scheme_for
from .storage import atomic_write_bytes, ensure_private_dir, safe_child_path
from .timestamps import parse_duration_to_seconds, parse_timestamp, timestamp_in
from .verifier import verify_mandate_as_third_party


# ── Storage ───────────────────────────────────────────────────────


def _home_dir() -> Path:
    override = os.getenv("COVENANT_HOME")
    return Path(override) if override else Path.home() / ".covenant"


def _secrets_dir() -> Path:
    override = os.getenv("COVENANT_SECRETS_DIR")
    return Path(override) if override else Path.home() / ".covenant-secrets"


def _mandates_dir() -> Path:
    path = _home_dir() / "mandates"
    ensure_private_dir(path)
    return path


def _audit() -> AuditTrail:
    return AuditTrail(
        path=_home_dir() / "audit.jsonl",
        key_path=_secrets_dir() / "audit_hmac.key",
    )


def _blob_store() -> LocalBlobStore:
    return LocalBlobStore(_home_dir() / "blobs")


def _save_mandate(mandate: Mandate) -> Path:
    path = safe_child_path(_mandates_dir(), mandate.mandate_id, ".json")
    atomic_write_bytes(path, mandate.to_json().encode("utf-8"))
    return path


def _load_mandate(ref: str) -> Mandate:
    """Load by file path, mandate id, or unique mandate id fragment."""
    candidate = Path(ref)
    if not candidate.is_file():
        mandates_dir = _mandates_dir()
        candidate = safe_child_path(mandates_dir, ref, ".json")
        if not candidate.exists():
            matches = sorted(mandates_dir.glob(f"*{ref}*.json"))
            if len(matches) != 1:
                detail = "no match" if not matches else f"{len(matches)} matches"
                raise click.ClickException(f"Mandate not found: {ref} ({detail})")
            candidate = matches[0]
    try:
        return Mandate.from_json(candidate.read_text(encoding="utf-8"))
    except CovenantError as exc:
        raise click.ClickException(f"Cannot load mandate {candidate}: {exc}") from exc


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate


def _read_payload(payload: Optional[str], payload_file: Optional[Path]) -> Any:
    if payload is not None and payload_file is not None:
        raise click.UsageError("Pass either --payload or --payload-file, not both")
    raw = payload_file.read_text(encoding="utf-8") if payload_file is not None else payload
    if raw is None:
        raise click.UsageError("--payload or --payload-file is required")
    try:
        return json.loads(raw)
    except ValueError as e:
        raise click.UsageError(f"Payload is not valid JSON: {e}") from e


def _domain_options(fn):
    fn = click.option("--verifying-contract", default=None, help="EIP-712 domain verifyingContract")(fn)
    fn = click.option("--domain-version", default=None, help="EIP-712 domain version")(fn)
    fn = click.option("--domain-name", default=None, help="EIP-712 domain name")(fn)
    fn = click.option("--chain-id", type=int, default=None, help="EIP-712 domain chainId")(fn)
    return fn


def _domain(
    chain_id: Optional[int],
    domain_name: Optional[str],
    domain_version: Optional[str],
    verifying_contract: Optional[str],
) -> Optional[dict[str, Any]]:
    if chain_id is None:
        return None
    domain: dict[str, Any] = {"chainId": chain_id}
    if domain_name is not None:
        domain["name"] = domain_name
    if domain_version is not None:
        domain["version"] = domain_version
    if verifying_contract is not None:
        domain["verifyingContract"] = verifying_contract
    return domain


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
def main(verbose: bool):
    """Covenant — dual-signed, third-party verifiable mandates."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--client", required=True, help="Client CAIP-10 account (eip155:<chainId>:<0xaddr>)")
@click.option("--server", required=True, help="Server CAIP-10 account")
@click.option("--deadline", default=None, help="Deadline (ISO 8601); overrides --expires-in")
@click.option("--expires-in", default="20m", help="Deadline relative to now (e.g. 20m, 72h, 30d)")
@click.option("--intent", default="", help="Human-readable description")
@click.option("--kind", default=None, help="Primitive kind for the core payload (e.g. swap@1)")
@click.option("--payload", default=None, help="Core payload as inline JSON")
@click.option("--payload-file", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None)
@click.option("--schema-version", "schema_version", default=None, help="Mandate schema version")
def create(
    client: str,
    server: str,
    deadline: Optional[str],
    expires_in: str,
    intent: str,
    kind: Optional[str],
    payload: Optional[str],
    payload_file: Optional[Path],
    schema_version: Optional[str],
):
    """Create a new unsigned mandate."""
    try:
        if deadline is None:
            deadline = timestamp_in(parse_duration_to_seconds(expires_in))
        mandate = Mandate(
            client=client,
            server=server,
            deadline=deadline,
            intent=intent,
            version=schema_version,
        )
        if kind is not None:
            mandate.set_core(kind, _read_payload(payload, payload_file))
    except (CovenantError, ValueError) as exc:
        _fail(f"Failed to create mandate: {exc}")

    path = _save_mandate(mandate)
    _audit().log(
        EventType.MANDATE_CREATED,
        mandate_id=mandate.mandate_id,
        mandate_hash=mandate.mandate_hash(),
        details={"client": client, "server": server, "kind": kind},
    )

    click.echo(f"✅ Mandate created: {mandate.mandate_id}")
    click.echo(f"   Client:   {mandate.client}")
    click.echo(f"   Server:   {mandate.server}")
    click.echo(f"   Deadline: {mandate.deadline}")
    click.echo(f"   Hash:     {mandate.mandate_hash()}")
    click.echo(f"   Saved to: {path}")


@main.command()
@click.argument("mandate_ref")
@click.option("--kind", required=True, help="Registered primitive kind")
@click.option("--payload", default=None, help="Core payload as inline JSON")
@click.option("--payload-file", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None)
def core(mandate_ref: str, kind: str, payload: Optional[str], payload_file: Optional[Path]):
    """Validate and set the mandate's core payload."""
    mandate = _load_mandate(mandate_ref)
    try:
        mandate.set_core(kind, _read_payload(payload, payload_file))
    except CovenantError as exc:
        _fail(f"Failed to set core: {exc}")

    _save_mandate(mandate)
    _audit().log(EventType.CORE_SET, mandate_id=mandate.mandate_id, mandate_hash=mandate.mandate_hash(),
                 details={"kind": kind})
    click.echo(f"✅ Core set to {kind} on {mandate.mandate_id}")
    if mandate.to_dict().get("signatures"):
        click.echo("⚠️  Existing signatures no longer match; re-sign the mandate.")


@main.command()
@click.argument("mandate_ref")
@click.option("--role", type=click.Choice([r.value for r in Role]), required=True)
@click.option("--key", prompt=True, hide_input=True, help="Signer private key hex or op:// reference")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--alg", type=click.Choice([a.value for a in SigAlg]), default=SigAlg.EIP191.value)
@_domain_options
def sign(
    mandate_ref: str,
    role: str,
    key: str,
    unsafe_allow_key_arg: bool,
    alg: str,
    chain_id: Optional[int],
    domain_name: Optional[str],
    domain_version: Optional[str],
    verifying_contract: Optional[str],
):
    """Sign a mandate as client or server (replaces that role's signature)."""
    ctx = click.get_current_context(silent=True)
    key_from_argv = ctx is not None and ctx.get_parameter_source("key") == ParameterSource.COMMANDLINE
    if key_from_argv and not unsafe_allow_key_arg:
        _fail("Refusing --key from argv. Re-run with prompt input or pass "
              "--unsafe-allow-key-arg to acknowledge the risk.")

    mandate = _load_mandate(mandate_ref)
    try:
        signer = EthAccountSigner.from_key(_resolve_private_key(key))
        scheme = scheme_for(alg, _domain(chain_id, domain_name, domain_version, verifying_contract))
        signature = mandate.sign(role, signer, scheme)
    except (CovenantError, ValueError, RuntimeError) as exc:
        _fail(f"Failed to sign mandate: {exc}")

    _save_mandate(mandate)
    _audit().log(
        EventType.MANDATE_SIGNED,
        mandate_id=mandate.mandate_id,
        mandate_hash=signature.mandate_hash,
        role=role,
        party=signer.address,
        details={"alg": signature.alg.value},
    )
    click.echo(f"✅ Signed as {role}: {mandate.mandate_id}")
    click.echo(f"   Signer:    {signer.address}")
    click.echo(f"   Algorithm: {signature.alg.value}")
    click.echo(f"   Hash:      {signature.mandate_hash}")


@main.command()
@click.argument("mandate_ref")
@click.option("--role", type=click.Choice(["client", "server", "all"]), default="all")
@_domain_options
def verify(
    mandate_ref: str,
    role: str,
    chain_id: Optional[int],
    domain_name: Optional[str],
    domain_version: Optional[str],
    verifying_contract: Optional[str],
):
    """Verify role signatures against the current mandate content."""
    mandate = _load_mandate(mandate_ref)
    domain = _domain(chain_id, domain_name, domain_version, verifying_contract)
    roles = [Role.CLIENT, Role.SERVER] if role == "all" else [Role(role)]
    audit = _audit()

    for r in roles:
        try:
            result = mandate.verify_role(r, domain)
        except CovenantError as exc:
            audit.log(EventType.VERIFICATION_FAILED, mandate_id=mandate.mandate_id, role=r.value,
                      success=False, reason=str(exc))
            _fail(f"{r.value} verification failed ({type(exc).__name__}): {exc}")
        audit.log(EventType.MANDATE_VERIFIED, mandate_id=mandate.mandate_id,
                  mandate_hash=result.recomputed_hash, role=r.value, party=result.recovered)
        click.echo(f"✅ {r.value} signature valid ({result.alg.value}) — signer {result.recovered}")


@main.command()
@click.argument("mandate_ref")
def inspect(mandate_ref: str):
    """Show the canonical form and hash of a mandate."""
    mandate = _load_mandate(mandate_ref)
    signatures = mandate.to_dict().get("signatures") or {}
    click.echo(f"Mandate:   {mandate.mandate_id}")
    click.echo(f"Hash:      {mandate.mandate_hash()}")
    click.echo(f"Core kind: {mandate.core.get('kind', 'N/A')}")
    click.echo(f"Signed by: {', '.join(sorted(signatures)) or 'nobody'}")
    click.echo("Canonical:")
    click.echo(mandate.to_canonical_string())


@main.command()
@click.argument("mandate_ref")
@click.option("--require-client", default=None, help="Client address the mandate must name")
@click.option("--require-server", default=None, help="Server address the mandate must name")
@click.option("--primitive", default=None, help="Expected core kind (e.g. swap@1)")
@click.option("--now", "now_", default=None, help="Reference time (ISO 8601) for the deadline check")
@click.option("--receipt", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the verification receipt JSON here")
@_domain_options
def attest(
    mandate_ref: str,
    require_client: Optional[str],
    require_server: Optional[str],
    primitive: Optional[str],
    now_: Optional[str],
    receipt: Optional[Path],
    chain_id: Optional[int],
    domain_name: Optional[str],
    domain_version: Optional[str],
    verifying_contract: Optional[str],
):
    """Verify a mandate as an independent third party."""
    mandate = _load_mandate(mandate_ref)
    domain = _domain(chain_id, domain_name, domain_version, verifying_contract)
    try:
        result = verify_mandate_as_third_party(
            mandate.to_dict(),
            require_client=require_client,
            require_server=require_server,
            now=parse_timestamp(now_) if now_ else None,
            client_domain=domain,
            server_domain=domain,
            primitive=primitive,
        )
    except (CovenantError, ValueError) as exc:
        _audit().log(EventType.VERIFICATION_FAILED, mandate_id=mandate.mandate_id,
                     success=False, reason=str(exc))
        _fail(f"Third-party verification failed ({type(exc).__name__}): {exc}")

    _audit().log(EventType.MANDATE_VERIFIED, mandate_id=mandate.mandate_id,
                 mandate_hash=result.mandate_hash, details={"third_party": True})
    click.echo(f"✅ Mandate verified: {mandate.mandate_id}")
    click.echo(f"   Client: {result.parties['client']}")
    click.echo(f"   Server: {result.parties['server']}")
    click.echo(f"   Hash:   {result.mandate_hash}")
    if receipt is not None:
        receipt.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
        click.echo(f"   Receipt: {receipt}")


@main.group("store")
def store_group():
    """Local content-addressed blob store."""
    pass


@store_group.command("put")
@click.argument("mandate_ref")
def store_put(mandate_ref: str):
    """Store a mandate document and print its content id."""
    mandate = _load_mandate(mandate_ref)
    content_id = _blob_store().put_mandate(mandate)
    _audit().log(EventType.MANDATE_STORED, mandate_id=mandate.mandate_id,
                 mandate_hash=mandate.mandate_hash(), details={"content_id": content_id})
    click.echo(content_id)


@store_group.command("get")
@click.argument("content_id")
@click.option("--out", type=click.Path(dir_okay=False, path_type=Path), default=None)
def store_get(content_id: str, out: Optional[Path]):
    """Fetch a mandate by content id; verifies integrity on read."""
    try:
        mandate = _blob_store().get_mandate(content_id)
    except CovenantError as exc:
        _fail(f"Failed to load blob: {exc}")
    if out is not None:
        out.write_text(mandate.to_json(), encoding="utf-8")
        click.echo(f"✓ Written to {out}")
    else:
        click.echo(mandate.to_json())


@main.command()
def primitives():
    """List registered primitive kinds."""
    registry = default_registry()
    for kind in registry.kinds():
        describe = registry.get(kind).describe
        click.echo(f"{kind}" + (f"  — {describe}" if describe else ""))


@main.command()
@click.option("--mandate-id", default=None, help="Filter by mandate ID")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(mandate_id: Optional[str], limit: int):
    """View the audit trail."""
    try:
        events = _audit().read_events(mandate_id=mandate_id, limit=limit)
    except AuditChainError as exc:
        _fail(str(exc))
    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        status = "✅" if event.success else "❌"
        role = f" [{event.role}]" if event.role else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {event.timestamp:.0f} {status} {event.event_type}{role} {event.mandate_id or ''}{reason}")


class _Loopback:
    """In-process transport for the demo: delivers straight to the peer's handler.

    Handlers are registered by name with connect(); there is no on_message.
    """

    def __init__(self):
        self.handlers: dict[str, Any] = {}
        self.results: dict[str, Any] = {}

    def connect(self, name: str, handler) -> None:
        self.handlers[name] = handler

    def send(self, peer: str, data: bytes) -> None:
        sender = next(name for name in self.handlers if name != peer)
        self.results[peer] = self.handlers[peer](sender, data)


@main.command()
def demo():
    """Run the offer → countersign → confirm → attest flow with throwaway wallets."""
    click.echo("🎬 Covenant Demo — dual-signed swap mandate")
    click.echo("=" * 50)

    agent_a = Account.create()
    agent_b = Account.create()
    click.echo("\n1️⃣  Generating agent wallets...")
    click.echo(f"   Client (A): {agent_a.address}")
    click.echo(f"   Server (B): {agent_b.address}")

    transport = _Loopback()
    server = ServerParty(agent_b, transport, chain_id=1, blob_store=_blob_store())
    client = ClientParty(agent_a, transport)
    transport.connect("server", server.handle_message)
    transport.connect("client", client.handle_message)

    click.echo("\n2️⃣  B offers a swap@1 mandate and signs as server...")
    offered = server.offer(
        "client",
        client_address=agent_a.address,
        deadline=timestamp_in(20 * 60),
        intent="Swap 100 USDC for WBTC on Ethereum mainnet.",
        kind=SWAP_V1,
        payload={
            "chainId": 1,
            "tokenIn": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
            "tokenOut": "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599",
            "amountIn": "100000000",
            "minOut": "165000",
            "recipient": agent_a.address,
            "deadline": timestamp_in(15 * 60),
        },
    )
    click.echo(f"   Mandate: {offered.mandate_id}")
    click.echo(f"   Hash:    {offered.mandate_hash()}")

    confirmed = transport.results.get("server")
    if confirmed is None:
        _fail("Mandate exchange did not complete")
    click.echo("\n3️⃣  A verified B, countersigned; B verified both signatures.")
    click.echo(f"   Stored as: {confirmed.content_id}")

    click.echo("\n4️⃣  Third party verifies from the stored copy...")
    stored = _blob_store().get_mandate(confirmed.content_id)
    receipt = verify_mandate_as_third_party(
        stored.to_dict(),
        require_client=agent_a.address,
        require_server=agent_b.address,
        primitive=SWAP_V1,
    )
    click.echo(f"   ✅ ok={receipt.ok} client={receipt.parties['client']} server={receipt.parties['server']}")
    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Offer → Countersign → Confirm → Attest")


if __name__ == "__main__":
    main()
