"""
A/B flow: server agent offers a swap, client agent countersigns, an observer verifies.

Each agent runs its own worker thread and receives messages through a queue,
the way two processes would over a real transport.
"""

import logging
import queue
import sys
import tempfile
import threading
from pathlib import Path

from eth_account import Account

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))
from covenant.blob_store import LocalBlobStore
from covenant.negotiation import ClientParty, ServerParty
from covenant.primitives import SWAP_V1
from covenant.signing import TypedDataSigning
from covenant.timestamps import timestamp_in
from covenant.verifier import verify_mandate_as_third_party


DOMAIN = {"name": "Covenant", "version": "1", "chainId": 8453}
USDC_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
WETH_BASE = "0x4200000000000000000000000000000000000006"


class QueueTransport:
    """One inbox per agent; send() drops bytes into the peer's inbox."""

    inboxes: dict[str, "queue.Queue[tuple[str, bytes]]"] = {}

    def __init__(self, name: str):
        self.name = name
        self.inboxes[name] = queue.Queue()
        self._handler = None

    def send(self, peer: str, data: bytes) -> None:
        self.inboxes[peer].put((self.name, data))

    def on_message(self, handler) -> None:
        self._handler = handler

    def serve(self, results: list, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                sender, data = self.inboxes[self.name].get(timeout=0.1)
            except queue.Empty:
                continue
            results.append(self._handler(sender, data))


def main():
    logging.basicConfig(level=logging.INFO, format="%(threadName)s %(name)s: %(message)s")
    print("🚀 Covenant A/B flow — EIP-712 swap mandate on Base")
    print("=" * 55)

    agent_a, agent_b = Account.create(), Account.create()
    print(f"   A (client): {agent_a.address}")
    print(f"   B (server): {agent_b.address}")

    store = LocalBlobStore(Path(tempfile.mkdtemp()) / "blobs")
    transport_a, transport_b = QueueTransport("A"), QueueTransport("B")
    server = ServerParty(
        agent_b,
        transport_b,
        chain_id=DOMAIN["chainId"],
        scheme=TypedDataSigning(DOMAIN),
        client_domain=DOMAIN,
        blob_store=store,
    )
    client = ClientParty(agent_a, transport_a, scheme=TypedDataSigning(DOMAIN), server_domain=DOMAIN)
    transport_a.on_message(client.handle_message)
    transport_b.on_message(server.handle_message)

    stop = threading.Event()
    confirmations: list = []
    workers = [
        threading.Thread(target=transport_a.serve, args=([], stop), name="A", daemon=True),
        threading.Thread(target=transport_b.serve, args=(confirmations, stop), name="B", daemon=True),
    ]
    for worker in workers:
        worker.start()

    offered = server.offer(
        "A",
        client_address=agent_a.address,
        deadline=timestamp_in(20 * 60),
        intent="Swap 100 USDC for WETH on Base",
        kind=SWAP_V1,
        payload={
            "chainId": DOMAIN["chainId"],
            "tokenIn": USDC_BASE,
            "tokenOut": WETH_BASE,
            "amountIn": "100000000",
            "minOut": "30000000000000000",
            "recipient": agent_a.address,
            "deadline": timestamp_in(15 * 60),
        },
    )
    print(f"\n📨 Offered {offered.mandate_id} ({offered.mandate_hash()})")

    for _ in range(50):
        if confirmations:
            break
        stop.wait(0.1)
    stop.set()

    confirmed = confirmations[0] if confirmations else None
    if confirmed is None:
        print("❌ Exchange did not complete")
        sys.exit(1)
    print(f"✅ Both signatures verified by B; stored as {confirmed.content_id}")

    receipt = verify_mandate_as_third_party(
        store.get_mandate(confirmed.content_id).to_dict(),
        require_client=agent_a.address,
        require_server=agent_b.address,
        client_domain=DOMAIN,
        server_domain=DOMAIN,
        primitive=SWAP_V1,
    )
    print(f"🔎 Observer: ok={receipt.ok} hash={receipt.mandate_hash}")


if __name__ == "__main__":
    main()
