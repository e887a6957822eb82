"""Tests for typed command dispatch and the conversational wrapper."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from treasury.automation.commands import (
    MUTATING_COMMANDS,
    CommandExecutor,
    CommandName,
    MoveToYieldArgs,
    VaultTransferArgs,
    parse_command,
    resolve_command,
)
from treasury.errors import ExecutionFailedError, InvalidInputError, VenueUnresolvedError
from treasury.types import FundingRate


# ========== Parsing ==========


def test_every_command_has_a_handler(ctx):
    executor = CommandExecutor(ctx)
    assert set(executor._handlers) == set(CommandName)


def test_missing_handler_fails_at_construction(ctx):
    class IncompleteExecutor(CommandExecutor):
        def _build_handlers(self):
            handlers = super()._build_handlers()
            del handlers[CommandName.GET_OFFLINE_QUEUE]
            return handlers

    with pytest.raises(RuntimeError, match="getOfflineQueue"):
        IncompleteExecutor(ctx)


def test_unknown_function_is_rejected():
    with pytest.raises(InvalidInputError, match="Unknown function: launchRocket"):
        resolve_command("launchRocket")


def test_vault_aliases_resolve():
    assert resolve_command("moveToArcVault") is CommandName.MOVE_TO_SAFETY_VAULT
    assert resolve_command("withdrawFromArcVault") is CommandName.WITHDRAW_FROM_SAFETY_VAULT


def test_parse_move_to_yield_defaults_amount():
    command, args = parse_command("moveToYield", {"protocol": " NAVI "})

    assert command is CommandName.MOVE_TO_YIELD
    assert args == MoveToYieldArgs(protocol="NAVI", amount=100.0)


def test_parse_move_to_yield_requires_protocol():
    with pytest.raises(InvalidInputError, match="Please specify a protocol"):
        parse_command("moveToYield", {})


@pytest.mark.parametrize("amount", [None, 0, -10, ""])
def test_parse_vault_deposit_requires_positive_amount(amount):
    with pytest.raises(InvalidInputError, match="positive amount in USD to deposit"):
        parse_command("moveToSafetyVault", {"amount": amount})


@pytest.mark.parametrize("amount", ["nan", "inf", "-inf", float("nan"), float("inf")])
@pytest.mark.parametrize("name", ["moveToSafetyVault", "withdrawFromSafetyVault", "moveToYield"])
def test_parse_rejects_non_finite_amount(name, amount):
    with pytest.raises(InvalidInputError, match="must be a finite number"):
        parse_command(name, {"amount": amount, "protocol": "scallop"})


def test_parse_vault_withdraw_uses_default_reason():
    _, args = parse_command("withdrawFromSafetyVault", {"amount": "25"})

    assert args == VaultTransferArgs(amount=25.0, reason="Redeploying to yield: market conditions improved")


def test_parse_non_numeric_amount():
    with pytest.raises(InvalidInputError, match="must be a number"):
        parse_command("moveToSafetyVault", {"amount": "lots"})


def test_mutating_commands():
    assert CommandName.GET_TREASURY_STATUS not in MUTATING_COMMANDS
    assert CommandName.MOVE_TO_YIELD in MUTATING_COMMANDS


# ========== Vault commands ==========


@pytest.mark.asyncio
async def test_move_to_safety_vault(ctx):
    text = await ctx.executor.execute_function("moveToSafetyVault", {"amount": 100, "reason": "Parking"})

    assert text.startswith("Deposited $100.00 into the safety vault.")
    assert "Reason: Parking" in text
    assert "Vault balance: ~$100.00" in text
    assert ctx.ledger.latest().kind == "safety_deposit"


@pytest.mark.asyncio
async def test_alias_routes_to_same_handler(ctx):
    await ctx.executor.execute_function("moveToArcVault", {"amount": 10})

    assert ctx.book.safety_balance == 10.0


@pytest.mark.asyncio
async def test_zero_amount_returns_prompt_and_records_nothing(ctx):
    text = await ctx.executor.execute_function("moveToSafetyVault", {"amount": 0})

    assert text == "Please specify a positive amount in USD to deposit."
    assert len(ctx.ledger) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["nan", "inf"])
async def test_non_finite_amount_leaves_book_untouched(make_context, amount):
    ctx = make_context(safety_usd=100.0)

    text = await ctx.executor.execute_function("moveToSafetyVault", {"amount": amount})

    assert "must be a finite number" in text
    assert ctx.book.safety_balance == 100.0
    assert await ctx.vault.balance() == 100.0
    assert len(ctx.ledger) == 0


@pytest.mark.asyncio
async def test_failed_withdraw_raises_from_dispatch(ctx):
    with pytest.raises(ExecutionFailedError) as exc:
        await ctx.executor.dispatch("withdrawFromSafetyVault", {"amount": 50})

    assert exc.value.decision_id == ctx.ledger.latest().id
    assert ctx.ledger.latest().status == "failed"


@pytest.mark.asyncio
async def test_failed_withdraw_is_text_from_execute_function(ctx):
    text = await ctx.executor.execute_function("withdrawFromSafetyVault", {"amount": 50})

    assert "Insufficient safety balance" in text
    assert ctx.activity.entries()[-1].level == "warning"


@pytest.mark.asyncio
async def test_withdraw_from_safety_vault(make_context):
    ctx = make_context(safety_usd=200.0)

    text = await ctx.executor.execute_function("withdrawFromSafetyVault", {"amount": 50})

    assert text.startswith("Withdrew $50.00 from the safety vault for yield redeployment.")
    assert "Remaining vault balance: ~$150.00" in text


@pytest.mark.asyncio
async def test_idempotency_key_prevents_second_execution(ctx):
    first = await ctx.executor.dispatch("moveToSafetyVault", {"amount": 10}, idempotency_key="k-1")
    second = await ctx.executor.dispatch("moveToSafetyVault", {"amount": 10}, idempotency_key="k-1")

    assert first.startswith("Deposited")
    assert second == "moveToSafetyVault already completed (key k-1); not executed again."
    assert ctx.book.safety_balance == 10.0
    assert len(ctx.ledger) == 1


@pytest.mark.asyncio
async def test_failed_attempt_can_be_retried_with_same_key(make_context):
    ctx = make_context(safety_usd=20.0)

    with pytest.raises(ExecutionFailedError):
        await ctx.executor.dispatch("withdrawFromSafetyVault", {"amount": 50}, idempotency_key="k-2")
    text = await ctx.executor.dispatch("withdrawFromSafetyVault", {"amount": 10}, idempotency_key="k-2")

    assert text.startswith("Withdrew $10.00")


@pytest.mark.asyncio
async def test_mutating_command_waits_for_execution_lock(ctx):
    async with ctx.execution_lock:
        pending = asyncio.ensure_future(ctx.executor.dispatch("moveToSafetyVault", {"amount": 5}))
        await asyncio.sleep(0)
        assert not pending.done()
        assert len(ctx.ledger) == 0

        # Read-only commands do not queue behind the lock
        status = await ctx.executor.dispatch("getTreasuryStatus")
        assert status.startswith("Treasury Status (Cross-Chain):")

    await pending
    assert len(ctx.ledger) == 1


# ========== Yield commands ==========


@pytest.mark.asyncio
async def test_move_to_yield_sizes_in_home_asset(ctx, price_source):
    price_source.price = 2.0

    text = await ctx.executor.execute_function("moveToYield", {"protocol": "navi protocol", "amount": 10})

    assert text.startswith("Deployed $20.00 to NAVI on Sui. Now earning 4.0% APY.")
    assert "(simulated on this network)" in text
    decision = ctx.ledger.latest()
    assert decision.amount == 20.0
    assert decision.chain == "home"


@pytest.mark.asyncio
async def test_move_to_yield_cross_chain_mentions_bridge_fee(ctx):
    text = await ctx.executor.execute_function("moveToYield", {"protocol": "aave", "amount": 1})

    assert "Net after 0.3% bridge fee." in text
    assert ctx.ledger.latest().chain == "cross-chain"


@pytest.mark.asyncio
async def test_move_to_unknown_venue(ctx):
    with pytest.raises(VenueUnresolvedError):
        await ctx.executor.dispatch("moveToYield", {"protocol": "unknown-venue-x"})

    text = await ctx.executor.execute_function("moveToYield", {"protocol": "unknown-venue-x"})
    assert "unknown-venue-x" in text
    assert len(ctx.ledger) == 0


@pytest.mark.asyncio
async def test_move_to_venue_without_yield(ctx):
    text = await ctx.executor.execute_function("moveToYield", {"protocol": "bluefin"})

    assert text == 'Protocol "bluefin" has no current yield. Available: Aave V3, Compound V3, NAVI, Scallop'


@pytest.mark.asyncio
async def test_move_to_yield_without_price(ctx, price_source):
    price_source.fail = True

    text = await ctx.executor.execute_function("moveToYield", {"protocol": "scallop"})

    assert "price unavailable" in text
    assert len(ctx.ledger) == 0


@pytest.mark.asyncio
async def test_find_best_yield(ctx):
    text = await ctx.executor.execute_function("findBestYield")

    assert text.startswith("Top yield opportunities:")
    assert "\n\nRecommendation: Deploy to Aave V3" in text


@pytest.mark.asyncio
async def test_positions_and_vault_share_when_empty(ctx):
    positions = await ctx.executor.execute_function("getYieldPositions")
    share = await ctx.executor.execute_function("getVaultShare")

    assert positions.startswith("No active yield positions.\nProtocol integrations: ")
    assert share == "No vault deposits yet. Say 'deposit' followed by an amount to get started."


@pytest.mark.asyncio
async def test_vault_share_after_deploy(ctx):
    await ctx.executor.execute_function("moveToYield", {"protocol": "scallop", "amount": 50})

    share = await ctx.executor.execute_function("getVaultShare")

    assert share.startswith("Vault share: $100.00 deposited across 1 protocol(s).")


@pytest.mark.asyncio
async def test_funding_rates(ctx, funding_source):
    assert await ctx.executor.execute_function("getFundingRates") == "Unable to fetch Bluefin funding rates."

    funding_source.rates = [
        FundingRate(market="SUI-PERP", rate=0.0002, annualized_pct=21.9),
        FundingRate(market="ETH-PERP", rate=0.00001, annualized_pct=1.095),
    ]
    text = await ctx.executor.execute_function("getFundingRates")

    assert text.startswith("Bluefin Funding Rates:")
    assert "Yield opportunity: SUI-PERP funding at 21.9% annualized, short to collect" in text
    assert "ETH-PERP funding" not in text


# ========== Treasury and agent commands ==========


@pytest.mark.asyncio
async def test_assess_treasury_risk_records_informational_decision(ctx):
    text = await ctx.executor.execute_function("assessTreasuryRisk")

    assert text.startswith("Treasury Risk Assessment:")
    decision = ctx.ledger.latest()
    assert decision.kind == "risk_assessment"
    assert decision.status == "informational"
    assert ctx.ledger.risk_score == decision.risk_score


@pytest.mark.asyncio
async def test_treasury_status_lists_recent_decisions(ctx):
    await ctx.executor.execute_function("moveToSafetyVault", {"amount": 100})

    text = await ctx.executor.execute_function("getTreasuryStatus")

    assert "Safety Vault:" in text
    assert "  • Balance: $100.00" in text
    assert "  • No active positions" in text
    assert "Recent Decisions:" in text
    assert "Deposited $100.00 to safety vault" in text


@pytest.mark.asyncio
async def test_set_risk_level(ctx):
    text = await ctx.executor.execute_function("setRiskLevel", {"level": "Conservative"})

    assert text.startswith("Risk level set to conservative.")
    assert "Cross-chain: disabled" in text
    assert ctx.risk_level == "conservative"

    bad = await ctx.executor.execute_function("setRiskLevel", {"level": "yolo"})
    assert bad.startswith("Invalid risk level 'yolo'")
    assert ctx.risk_level == "conservative"


@pytest.mark.asyncio
async def test_agent_log(ctx):
    assert (await ctx.executor.execute_function("getAgentLog")).startswith("No agent activity yet.")

    await ctx.executor.execute_function("setRiskLevel", {"level": "aggressive"})
    text = await ctx.executor.execute_function("getAgentLog", {"count": 1})

    assert text.startswith("Recent agent activity:")
    assert "INFO: Risk level set to aggressive" in text


@pytest.mark.asyncio
async def test_start_and_stop_auto_yield(ctx):
    started = await ctx.executor.execute_function("startAutoYield")
    again = await ctx.executor.execute_function("startAutoYield")
    stopped = await ctx.executor.execute_function("stopAutoYield")
    idle = await ctx.executor.execute_function("stopAutoYield")
    await ctx.scheduler.wait_idle()

    assert started.startswith("Auto yield optimizer started. Monitoring yields every 60 seconds")
    assert again == "Auto yield optimizer is already running."
    assert stopped == "Auto yield optimizer stopped."
    assert idle == "Auto yield optimizer is not running."


@pytest.mark.asyncio
async def test_offline_queue_summary(ctx):
    assert await ctx.executor.execute_function("getOfflineQueue") == "No offline intents queued."


@pytest.mark.asyncio
async def test_unexpected_error_becomes_text(ctx):
    with patch.object(ctx.book.positions, "all", side_effect=RuntimeError("kaboom")):
        text = await ctx.executor.execute_function("getVaultShare")

    assert text == "getVaultShare failed: kaboom"
    assert ctx.activity.entries()[-1].level == "error"


@pytest.mark.asyncio
async def test_offline_drain_through_executor(ctx):
    queue = ctx.offline_queue
    deposit = queue.enqueue("moveToSafetyVault", {"amount": 10})
    queue.enqueue("withdrawFromSafetyVault", {"amount": 500})
    queue.enqueue("getTreasuryStatus")

    results = await queue.drain_pending(ctx.executor)

    assert [r.status for r in results] == ["completed", "failed", "completed"]
    assert "Insufficient safety balance" in results[1].error
    assert ctx.ledger.has_completed(deposit.idempotency_key)
    assert ctx.book.safety_balance == 10.0
