"""CLI command tests."""

import json
import re
from pathlib import Path

from click.testing import CliRunner
from eth_account import Account

from covenant.cli import main


SWAP_PAYLOAD = {
    "chainId": 1,
    "tokenIn": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    "tokenOut": "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599",
    "amountIn": "100000000",
    "minOut": "165000",
    "recipient": "0x1234567890123456789012345678901234567890",
    "deadline": "2099-01-01T00:00:00.000Z",
}


def _env(tmp_path: Path) -> dict[str, str]:
    return {
        "HOME": str(tmp_path),
        "COVENANT_HOME": str(tmp_path / "home"),
        "COVENANT_SECRETS_DIR": str(tmp_path / "secrets"),
    }


def _create(runner, env, client, server, *extra):
    result = runner.invoke(
        main,
        [
            "create",
            "--client", f"eip155:1:{client.address}",
            "--server", f"eip155:1:{server.address}",
            "--intent", "Swap 100 USDC for WBTC",
            "--kind", "swap@1",
            "--payload", json.dumps(SWAP_PAYLOAD),
            *extra,
        ],
        env=env,
    )
    assert result.exit_code == 0, result.output
    return re.search(r"Mandate created: (\S+)", result.output).group(1)


def _sign(runner, env, mandate_id, role, account, *extra):
    return runner.invoke(
        main,
        ["sign", mandate_id, "--role", role, *extra],
        input=account.key.hex() + "\n",
        env=env,
    )


def test_sign_rejects_raw_key_on_argv(tmp_path):
    runner = CliRunner()
    env = _env(tmp_path)
    client, server = Account.create(), Account.create()
    mandate_id = _create(runner, env, client, server)

    result = runner.invoke(
        main,
        ["sign", mandate_id, "--role", "server", "--key", server.key.hex()],
        env=env,
    )

    assert result.exit_code != 0
    assert "Refusing --key from argv" in result.output


def test_sign_accepts_argv_key_with_unsafe_flag(tmp_path):
    runner = CliRunner()
    env = _env(tmp_path)
    client, server = Account.create(), Account.create()
    mandate_id = _create(runner, env, client, server)

    result = runner.invoke(
        main,
        ["sign", mandate_id, "--role", "server", "--key", server.key.hex(), "--unsafe-allow-key-arg"],
        env=env,
    )

    assert result.exit_code == 0, result.output
    assert server.address in result.output


def test_create_sign_verify_attest_flow(tmp_path):
    runner = CliRunner()
    env = _env(tmp_path)
    client, server = Account.create(), Account.create()
    mandate_id = _create(runner, env, client, server)

    partial = runner.invoke(main, ["verify", mandate_id], env=env)
    assert partial.exit_code != 0
    assert "SignatureMissingError" in partial.output

    assert _sign(runner, env, mandate_id, "server", server).exit_code == 0
    server_only = runner.invoke(main, ["verify", mandate_id, "--role", "server"], env=env)
    assert server_only.exit_code == 0, server_only.output
    assert server.address in server_only.output

    assert _sign(runner, env, mandate_id, "client", client).exit_code == 0
    both = runner.invoke(main, ["verify", mandate_id], env=env)
    assert both.exit_code == 0, both.output

    receipt_path = tmp_path / "receipt.json"
    attest = runner.invoke(
        main,
        [
            "attest", mandate_id,
            "--require-client", client.address,
            "--require-server", server.address,
            "--primitive", "swap@1",
            "--receipt", str(receipt_path),
        ],
        env=env,
    )
    assert attest.exit_code == 0, attest.output
    receipt = json.loads(receipt_path.read_text())
    assert receipt["ok"] is True
    assert receipt["parties"]["client"] == client.address.lower()

    wrong = runner.invoke(
        main, ["attest", mandate_id, "--require-client", Account.create().address], env=env
    )
    assert wrong.exit_code != 0
    assert "IdentityMismatchError" in wrong.output

    audit = runner.invoke(main, ["audit", "--mandate-id", mandate_id], env=env)
    assert audit.exit_code == 0
    assert "mandate_created" in audit.output
    assert "mandate_signed [client]" in audit.output


def test_eip712_signing_needs_chain_id(tmp_path):
    runner = CliRunner()
    env = _env(tmp_path)
    client, server = Account.create(), Account.create()
    mandate_id = _create(runner, env, client, server)

    missing = _sign(runner, env, mandate_id, "server", server, "--alg", "eip712")
    assert missing.exit_code != 0
    assert "chainId" in missing.output

    signed = _sign(
        runner, env, mandate_id, "server", server,
        "--alg", "eip712", "--chain-id", "1", "--domain-name", "Covenant", "--domain-version", "1",
    )
    assert signed.exit_code == 0, signed.output

    result = runner.invoke(
        main,
        ["verify", mandate_id, "--role", "server", "--chain-id", "1",
         "--domain-name", "Covenant", "--domain-version", "1"],
        env=env,
    )
    assert result.exit_code == 0, result.output


def test_core_change_invalidates_signature(tmp_path):
    runner = CliRunner()
    env = _env(tmp_path)
    client, server = Account.create(), Account.create()
    mandate_id = _create(runner, env, client, server)
    _sign(runner, env, mandate_id, "server", server)

    changed = runner.invoke(
        main,
        ["core", mandate_id, "--kind", "swap@1", "--payload", json.dumps({**SWAP_PAYLOAD, "minOut": "1"})],
        env=env,
    )
    assert changed.exit_code == 0, changed.output
    assert "re-sign" in changed.output

    result = runner.invoke(main, ["verify", mandate_id, "--role", "server"], env=env)
    assert result.exit_code != 0
    assert "HashMismatchError" in result.output


def test_create_rejects_bad_payload(tmp_path):
    runner = CliRunner()
    env = _env(tmp_path)

    result = runner.invoke(
        main,
        [
            "create",
            "--client", f"eip155:1:{Account.create().address}",
            "--server", f"eip155:1:{Account.create().address}",
            "--kind", "swap@1",
            "--payload", json.dumps({"chainId": 1}),
        ],
        env=env,
    )

    assert result.exit_code != 0
    assert "Invalid swap@1 payload" in result.output


def test_inspect_and_store(tmp_path):
    runner = CliRunner()
    env = _env(tmp_path)
    client, server = Account.create(), Account.create()
    mandate_id = _create(runner, env, client, server)

    inspect = runner.invoke(main, ["inspect", mandate_id[-8:]], env=env)
    assert inspect.exit_code == 0, inspect.output
    assert "Signed by: nobody" in inspect.output
    assert '"kind":"swap@1"' in inspect.output

    put = runner.invoke(main, ["store", "put", mandate_id], env=env)
    assert put.exit_code == 0, put.output
    content_id = put.output.strip()
    assert content_id.startswith("0x")

    out_path = tmp_path / "fetched.json"
    get = runner.invoke(main, ["store", "get", content_id, "--out", str(out_path)], env=env)
    assert get.exit_code == 0, get.output
    assert json.loads(out_path.read_text())["mandateId"] == mandate_id

    missing = runner.invoke(main, ["store", "get", "0x" + "00" * 32], env=env)
    assert missing.exit_code != 0
    assert "Blob not found" in missing.output


def test_unknown_mandate_reference(tmp_path):
    runner = CliRunner()
    result = runner.invoke(main, ["inspect", "does-not-exist"], env=_env(tmp_path))

    assert result.exit_code != 0
    assert "Mandate not found" in result.output


def test_primitives_lists_builtins(tmp_path):
    result = CliRunner().invoke(main, ["primitives"], env=_env(tmp_path))

    assert result.exit_code == 0
    assert "swap@1" in result.output
    assert "transfer@1" in result.output


def test_demo_runs_end_to_end(tmp_path):
    result = CliRunner().invoke(main, ["demo"], env=_env(tmp_path))

    assert result.exit_code == 0, result.output
    assert "ok=True" in result.output
    assert "Demo complete" in result.output
