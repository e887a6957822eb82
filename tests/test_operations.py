"""Tests for treasury operations (the balance-moving layer)."""

from __future__ import annotations

import asyncio

import pytest

from tests.conftest import make_position
from treasury.errors import InvalidInputError, VenueUnresolvedError
from treasury.execution.interfaces import TxResult
from treasury.execution.paper import PaperBridgeAdapter, PaperChainAdapter


class RejectingVault:
    async def deposit(self, amount, reason):
        return TxResult(dry_run=False, accepted=False, reason="vault paused")

    async def withdraw(self, amount, reason):
        return TxResult(dry_run=False, accepted=False, reason="vault paused")

    async def balance(self):
        return 0.0


class HangingVault(RejectingVault):
    async def deposit(self, amount, reason):
        await asyncio.sleep(5)


class RejectingChainAdapter(PaperChainAdapter):
    async def submit(self, steps):
        self.submitted.append(tuple(steps))
        return TxResult(dry_run=False, accepted=False, reason="venue paused")


@pytest.mark.asyncio
async def test_deposit_from_wallet_adds_to_safety(ctx):
    decision = await ctx.operations.deposit_to_safety(100.0, reason="manual")

    assert decision.kind == "safety_deposit"
    assert decision.status == "simulated"
    assert decision.amount == 100.0
    assert decision.tx_ref.startswith("paper-vault-")
    assert ctx.book.safety_balance == 100.0
    assert await ctx.vault.balance() == 100.0


@pytest.mark.asyncio
async def test_deposit_from_positions_scales_yield_down(ctx):
    ctx.book.positions.upsert(make_position("Scallop", 600.0))
    ctx.book.positions.upsert(make_position("NAVI", 400.0))

    decision = await ctx.operations.deposit_to_safety(500.0, reason="risk", kind="auto_safety", source="positions")

    assert decision.kind == "auto_safety"
    assert ctx.book.safety_balance == 500.0
    assert ctx.book.yield_total == pytest.approx(500.0)
    assert ctx.book.positions.get("Scallop", "Sui").principal_usd == pytest.approx(300.0)


@pytest.mark.asyncio
async def test_rejected_vault_deposit_records_failed_decision(make_context):
    ctx = make_context(vault=RejectingVault())

    decision = await ctx.operations.deposit_to_safety(50.0, reason="manual")

    assert decision.status == "failed"
    assert decision.action.startswith("FAILED: ")
    assert "vault paused" in decision.reasoning
    assert ctx.book.safety_balance == 0.0
    assert ctx.ledger.last_at("safety_deposit") is None


@pytest.mark.asyncio
async def test_vault_timeout_is_a_failed_decision(make_context):
    ctx = make_context(vault=HangingVault(), execution_timeout_seconds=0.01)

    decision = await ctx.operations.deposit_to_safety(50.0, reason="manual")

    assert decision.status == "failed"
    assert "timed out" in decision.reasoning


@pytest.mark.asyncio
async def test_withdraw_beyond_balance_fails_without_moving_funds(make_context):
    ctx = make_context(safety_usd=20.0)

    decision = await ctx.operations.withdraw_from_safety(50.0, reason="redeploy")

    assert decision.status == "failed"
    assert "Insufficient safety balance" in decision.reasoning
    assert ctx.book.safety_balance == 20.0


@pytest.mark.asyncio
async def test_withdraw_within_balance(make_context):
    ctx = make_context(safety_usd=200.0)

    decision = await ctx.operations.withdraw_from_safety(50.0, reason="redeploy")

    assert decision.kind == "yield_withdraw"
    assert decision.status == "simulated"
    assert ctx.book.safety_balance == 150.0


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5.0, float("nan"), float("inf")])
async def test_non_positive_amount_raises_before_any_decision(ctx, amount):
    with pytest.raises(InvalidInputError):
        await ctx.operations.deposit_to_safety(amount, reason="x")
    with pytest.raises(InvalidInputError):
        await ctx.operations.withdraw_from_safety(amount, reason="x")

    assert len(ctx.ledger) == 0


@pytest.mark.asyncio
async def test_unknown_venue_raises_before_any_decision(ctx):
    with pytest.raises(VenueUnresolvedError):
        await ctx.operations.deploy_to_venue("Moonfarm", 100.0, spot_price=2.0, reason="x")

    assert len(ctx.ledger) == 0


@pytest.mark.asyncio
async def test_deploy_cross_chain_on_testnet_is_simulated(ctx):
    decision = await ctx.operations.deploy_to_venue("aave", 100.0, spot_price=2.0, reason="best yield", apy=11.7)

    assert decision.chain == "cross-chain"
    assert decision.status == "simulated"
    assert decision.tx_ref is None
    assert "[Simulated] Swapping 50.0000 SUI" in decision.reasoning
    position = ctx.book.positions.get("Aave V3", "Arbitrum")
    assert position.principal_usd == 100.0
    assert position.principal == 50.0
    assert position.apy == 11.7


@pytest.mark.asyncio
async def test_deploy_on_mainnet_submits_through_home_adapter(make_context):
    ctx = make_context(network="mainnet")
    home = PaperChainAdapter("Sui")
    ctx.router.home = home

    decision = await ctx.operations.deploy_to_venue("Scallop", 40.0, spot_price=2.0, reason="r")

    assert len(home.submitted) == 1
    assert home.submitted[0][0].amount == 20.0
    # Paper submissions are dry runs even on mainnet
    assert decision.status == "simulated"
    assert decision.tx_ref.startswith("paper-sui-")


@pytest.mark.asyncio
async def test_deploy_adds_to_existing_position(ctx):
    await ctx.operations.deploy_to_venue("Scallop", 100.0, spot_price=2.0, reason="r", apy=6.0)
    await ctx.operations.deploy_to_venue("Scallop", 50.0, spot_price=2.0, reason="r")

    position = ctx.book.positions.get("Scallop", "Sui")
    assert position.principal_usd == 150.0
    assert position.apy == 6.0


@pytest.mark.asyncio
async def test_deploy_without_spot_price_fails(ctx):
    decision = await ctx.operations.deploy_to_venue("Scallop", 100.0, spot_price=0.0, reason="r")

    assert decision.status == "failed"
    assert "Spot price unavailable" in decision.reasoning
    assert ctx.book.positions.all() == []


@pytest.mark.asyncio
async def test_redeploy_moves_vault_funds_to_venue(make_context):
    ctx = make_context(safety_usd=1000.0)

    decision = await ctx.operations.redeploy_from_safety("Aave V3", 500.0, spot_price=2.0, reason="recovery")

    assert decision.kind == "auto_redeploy"
    assert decision.status == "simulated"
    assert ctx.book.safety_balance == 500.0
    assert ctx.book.positions.get("Aave V3", "Arbitrum").principal_usd == 500.0
    assert len(ctx.ledger) == 1


@pytest.mark.asyncio
async def test_redeploy_with_empty_vault_fails(ctx):
    decision = await ctx.operations.redeploy_from_safety("Scallop", 10.0, spot_price=2.0, reason="recovery")

    assert decision.status == "failed"
    assert ctx.book.positions.all() == []


def test_record_assessment_is_informational(ctx):
    decision = ctx.operations.record_assessment(trigger="Routine check", action="Assessed", reasoning="ok", risk_score=33)

    assert decision.status == "informational"
    assert decision.kind == "risk_assessment"
    assert ctx.ledger.risk_score == 33


def test_paper_bridge_route():
    step = PaperBridgeAdapter().build_route("Sui", "Arc", "USDC", 10.0)
    assert step.describe() == "bridge 10.0000 USDC Sui -> Arc"


@pytest.mark.asyncio
async def test_deposit_from_positions_is_capped_at_yield_total(ctx):
    ctx.book.positions.upsert(make_position("Scallop", 120.0))

    decision = await ctx.operations.deposit_to_safety(500.0, reason="risk", kind="auto_safety", source="positions")

    assert decision.amount == 120.0
    assert "only $120.00 was in yield positions" in decision.reasoning
    assert ctx.book.safety_balance == 120.0
    assert ctx.book.total_value == 120.0


@pytest.mark.asyncio
async def test_deposit_from_empty_positions_raises(ctx):
    with pytest.raises(InvalidInputError, match="No yield positions"):
        await ctx.operations.deposit_to_safety(50.0, reason="risk", source="positions")

    assert ctx.book.safety_balance == 0.0
    assert len(ctx.ledger) == 0


@pytest.mark.asyncio
async def test_redeploy_without_spot_price_leaves_vault_untouched(make_context):
    ctx = make_context(safety_usd=1000.0)

    decision = await ctx.operations.redeploy_from_safety("Aave V3", 850.0, spot_price=0.0, reason="drift")

    assert decision.status == "failed"
    assert "Spot price unavailable" in decision.reasoning
    assert ctx.book.safety_balance == 1000.0
    assert await ctx.vault.balance() == 1000.0
    assert ctx.book.positions.all() == []


@pytest.mark.asyncio
async def test_redeploy_rejected_by_venue_keeps_funds_on_book(make_context):
    ctx = make_context(safety_usd=1000.0, network="mainnet")
    ctx.router.home = RejectingChainAdapter("Sui")

    decision = await ctx.operations.redeploy_from_safety("Scallop", 400.0, spot_price=2.0, reason="recovery")

    assert decision.status == "failed"
    assert "venue paused" in decision.reasoning
    assert ctx.book.safety_balance == 1000.0
    assert ctx.book.positions.all() == []
    assert ctx.book.total_value == 1000.0
