"""CLI flow and key-handling tests."""

import json

import pytest
from click.testing import CliRunner
from eth_account import Account

from x402guard.cli import _parse_duration_to_seconds, main


OWNER = Account.create()
AGENT = Account.create()
MERCHANT = Account.create()
URL = "https://api.example.com/v1/search"


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def env(tmp_path):
    return {"X402GUARD_HOME": str(tmp_path / "home")}


def invoke_as(runner, env, account, args):
    return runner.invoke(main, args, input=account.key.hex() + "\n", env=env)


def create_guard(runner, env):
    result = invoke_as(runner, env, OWNER, [
        "create",
        "--agent", AGENT.address,
        "--max-per-tx", "1",
        "--daily-limit", "5",
        "--approval-threshold", "0.5",
    ])
    assert result.exit_code == 0, result.output
    return result.output.split("Guard created: ")[1].split()[0]


def test_pay_rejects_raw_key_on_argv(runner, env):
    result = runner.invoke(
        main,
        [
            "pay",
            "0x" + "11" * 20,
            "--to", MERCHANT.address,
            "--amount", "0.1",
            "--url", URL,
            "--key", AGENT.key.hex(),
        ],
        env=env,
    )

    assert result.exit_code != 0
    assert "Refusing --key from argv" in result.output


def test_full_flow(runner, env):
    gid = create_guard(runner, env)

    result = runner.invoke(main, ["mint", OWNER.address, "--amount", "10"], env=env)
    assert result.exit_code == 0, result.output

    result = invoke_as(runner, env, OWNER, ["fund", gid, "--amount", "10"])
    assert "balance $10.00" in result.output

    result = invoke_as(runner, env, OWNER, ["endpoint", gid, "--url", URL, "--allow"])
    assert result.exit_code == 0, result.output

    result = invoke_as(runner, env, AGENT, [
        "pay", gid, "--to", MERCHANT.address, "--amount", "0.25", "--url", URL,
    ])
    assert "Payment completed: $0.25" in result.output

    result = invoke_as(runner, env, AGENT, [
        "pay", gid, "--to", MERCHANT.address, "--amount", "0.75", "--url", URL,
    ])
    assert result.exit_code == 0, result.output
    assert "Payment ID:  0" in result.output

    result = runner.invoke(main, ["pending", gid], env=env)
    assert "#0 pending" in result.output

    result = invoke_as(runner, env, OWNER, ["approve", gid, "0"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(main, ["status", gid], env=env)
    assert "Balance:      $9.00" in result.output
    assert "$1.00 of $5.00" in result.output

    result = runner.invoke(main, ["audit", "--account-id", gid], env=env)
    assert "payment_approved" in result.output


def test_json_output(runner, env):
    gid = create_guard(runner, env)
    runner.invoke(main, ["mint", OWNER.address, "--amount", "10"], env=env)
    invoke_as(runner, env, OWNER, ["fund", gid, "--amount", "10"])
    invoke_as(runner, env, OWNER, ["endpoint", gid, "--url", URL, "--allow"])

    result = invoke_as(runner, env, AGENT, [
        "pay", gid, "--to", MERCHANT.address, "--amount", "0.75", "--url", URL, "--json",
    ])
    assert result.exit_code == 0, result.output
    payment = json.loads(result.output[result.output.index("{"):])
    assert payment["decision"] == "needs_approval"
    assert payment["payment_id"] == 0

    result = runner.invoke(main, ["pending", gid, "--json"], env=env)
    assert [(p["payment_id"], p["amount"], p["status"]) for p in json.loads(result.output)] == [
        (0, 750_000, "pending"),
    ]

    result = runner.invoke(main, ["status", gid, "--json"], env=env)
    state = json.loads(result.output)
    assert state["account_id"] == gid
    assert state["balance"] == 10_000_000
    assert state["remaining_daily_budget"] == 5_000_000
    assert state["pending"] == 1


def test_blocked_payment_exits_nonzero(runner, env):
    gid = create_guard(runner, env)
    result = invoke_as(runner, env, AGENT, [
        "pay", gid, "--to", MERCHANT.address, "--amount", "0.1", "--url", URL,
    ])
    assert result.exit_code == 1
    assert "EndpointNotAllowed" in result.output


def test_owner_only_command_rejects_agent(runner, env):
    gid = create_guard(runner, env)
    result = invoke_as(runner, env, AGENT, ["allow-all", gid, "--enable"])
    assert result.exit_code == 1
    assert "not the account owner" in result.output


def test_check_does_not_need_key(runner, env):
    gid = create_guard(runner, env)
    result = runner.invoke(main, ["check", gid, "--amount", "0.75", "--url", URL], env=env)
    assert "EndpointNotAllowed" in result.output


def test_guards_lists_by_owner(runner, env):
    gid = create_guard(runner, env)
    result = runner.invoke(main, ["guards", "--owner", OWNER.address], env=env)
    assert gid in result.output


def test_demo_runs(runner, env):
    result = runner.invoke(main, ["demo"], env=env)
    assert result.exit_code == 0, result.output
    assert "Demo complete" in result.output


def test_parse_duration():
    assert _parse_duration_to_seconds("30m") == 1800
    assert _parse_duration_to_seconds("24h") == 86400
    with pytest.raises(ValueError):
        _parse_duration_to_seconds("soon")
