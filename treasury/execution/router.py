"""Protocol router: free-text venue name -> execution descriptor.

Same-chain lending venues delegate straight to the home chain adapter.
Cross-chain venues, and the safety vault, are reached by swapping to the
settlement asset and then bridging. Descriptors are flagged `is_simulated`
whenever the result would not be a real submission on the active network.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, Optional, Union

from treasury.config import HOME_ASSET, HOME_CHAIN, SAFETY_CHAIN, SETTLEMENT_ASSET
from treasury.errors import InvalidInputError, VenueUnresolvedError
from treasury.execution.interfaces import BridgeAdapter, ChainAdapter, TxStep

logger = logging.getLogger(__name__)

VenueKind = Literal["lending", "safety", "perp"]
RouteAction = Literal["deposit", "withdraw", "swap_and_bridge", "bridge_and_withdraw", "swap_for_margin"]


@dataclass(frozen=True)
class VenueSpec:
    display_name: str
    chain: str
    kind: VenueKind
    description: str
    # Margin deposits need venue-side auth that is not wired up
    requires_auth: bool = False


class Venue(Enum):
    SCALLOP = VenueSpec("Scallop", HOME_CHAIN, "lending", "Lending pool on Sui")
    NAVI = VenueSpec("NAVI", HOME_CHAIN, "lending", "Lending pool on Sui")
    AAVE_V3 = VenueSpec("Aave V3", "Arbitrum", "lending", "Lending market on Arbitrum")
    COMPOUND_V3 = VenueSpec("Compound V3", "Optimism", "lending", "Lending market on Optimism")
    ARC = VenueSpec("Arc", SAFETY_CHAIN, "safety", "USDC settlement vault")
    BLUEFIN = VenueSpec(
        "Bluefin", HOME_CHAIN, "perp", "Perpetual DEX margin (funding-rate yield)", requires_auth=True
    )

    @property
    def spec(self) -> VenueSpec:
        return self.value

    @property
    def display_name(self) -> str:
        return self.value.display_name

    @property
    def chain(self) -> str:
        return self.value.chain

    @property
    def is_cross_chain(self) -> bool:
        return self.value.chain != HOME_CHAIN


VENUE_SYNONYMS: dict[str, Venue] = {
    "scallop": Venue.SCALLOP,
    "scallop-lend": Venue.SCALLOP,
    "navi": Venue.NAVI,
    "navi-lending": Venue.NAVI,
    "navi protocol": Venue.NAVI,
    "aave": Venue.AAVE_V3,
    "aave v3": Venue.AAVE_V3,
    "aave-v3": Venue.AAVE_V3,
    "compound": Venue.COMPOUND_V3,
    "compound v3": Venue.COMPOUND_V3,
    "compound-v3": Venue.COMPOUND_V3,
    "arc": Venue.ARC,
    "circle": Venue.ARC,
    "bluefin": Venue.BLUEFIN,
    "bluefin-perp": Venue.BLUEFIN,
}


def resolve_venue(name: Union[str, Venue]) -> Venue:
    """Case-insensitive venue lookup; raises `VenueUnresolvedError` on a miss."""
    if isinstance(name, Venue):
        return name
    key = " ".join(str(name or "").lower().split())
    venue = VENUE_SYNONYMS.get(key)
    if venue is None:
        raise VenueUnresolvedError(str(name))
    return venue


@dataclass(frozen=True)
class RouteContext:
    spot_price: float
    wallet_address: Optional[str] = None


@dataclass(frozen=True)
class ActionDescriptor:
    """What will be (or would be) executed for a venue action.

    `tx` is the first step, signed on the home chain; `steps` is the full
    sequence including any bridge hop.
    """

    tx: TxStep
    venue: Venue
    action: RouteAction
    description: str
    is_simulated: bool
    steps: tuple[TxStep, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "venue": self.venue.display_name,
            "action": self.action,
            "description": self.description,
            "is_simulated": self.is_simulated,
            "steps": [s.describe() for s in self.steps],
        }


class ProtocolRouter:
    def __init__(
        self,
        *,
        home: ChainAdapter,
        bridge: BridgeAdapter,
        network: str = "testnet",
    ) -> None:
        self.home = home
        self.bridge = bridge
        self.network = network

    @property
    def is_mainnet(self) -> bool:
        return self.network == "mainnet"

    def _is_live(self, venue: Venue) -> bool:
        return self.is_mainnet and not venue.spec.requires_auth and self.home.is_available(venue.display_name)

    def build_deposit(self, venue: Union[str, Venue], amount: float, ctx: RouteContext) -> ActionDescriptor:
        """Describe a deposit of `amount` home-asset units into `venue`."""
        resolved = resolve_venue(venue)
        if not math.isfinite(amount) or amount <= 0:
            raise InvalidInputError(f"Deposit amount must be positive, got {amount}")

        name = resolved.display_name
        live = self._is_live(resolved)
        prefix = "" if live else "[Simulated] "

        if resolved.spec.kind == "perp":
            swap = self.home.build_swap(HOME_ASSET, SETTLEMENT_ASSET, amount)
            return ActionDescriptor(
                tx=swap,
                venue=resolved,
                action="swap_for_margin",
                description=f"[Simulated] Swapping {amount:.4f} {HOME_ASSET} -> {SETTLEMENT_ASSET} for {name} margin deposit",
                is_simulated=True,
                steps=(swap,),
            )

        if not resolved.is_cross_chain:
            step = self.home.build_deposit(name, HOME_ASSET, amount)
            return ActionDescriptor(
                tx=step,
                venue=resolved,
                action="deposit",
                description=f"{prefix}Depositing {amount:.4f} {HOME_ASSET} into {name} lending pool",
                is_simulated=not live,
                steps=(step,),
            )

        settlement = amount * ctx.spot_price
        swap = self.home.build_swap(HOME_ASSET, SETTLEMENT_ASSET, amount)
        hop = self.bridge.build_route(HOME_CHAIN, resolved.chain, SETTLEMENT_ASSET, settlement)
        return ActionDescriptor(
            tx=swap,
            venue=resolved,
            action="swap_and_bridge",
            description=(
                f"{prefix}Swapping {amount:.4f} {HOME_ASSET} -> ~{settlement:.2f} {SETTLEMENT_ASSET}, "
                f"then bridging to {name} on {resolved.chain}"
            ),
            is_simulated=not live,
            steps=(swap, hop),
        )

    def build_withdraw(self, venue: Union[str, Venue], amount: float, ctx: RouteContext) -> ActionDescriptor:
        """Describe a withdrawal of `amount` units from `venue` back to the home chain."""
        resolved = resolve_venue(venue)
        if not math.isfinite(amount) or amount <= 0:
            raise InvalidInputError(f"Withdraw amount must be positive, got {amount}")

        name = resolved.display_name
        if not resolved.is_cross_chain and resolved.spec.kind == "lending":
            live = self._is_live(resolved)
            step = self.home.build_withdraw(name, HOME_ASSET, amount)
            return ActionDescriptor(
                tx=step,
                venue=resolved,
                action="withdraw",
                description=f"{'' if live else '[Simulated] '}Withdrawing {amount:.4f} {HOME_ASSET} from {name}",
                is_simulated=not live,
                steps=(step,),
            )

        # Remote withdrawals need a signer on the remote chain; only described here
        remote = TxStep(kind="withdraw", chain=resolved.chain, venue=name, asset=SETTLEMENT_ASSET, amount=amount)
        hop = self.bridge.build_route(resolved.chain, HOME_CHAIN, SETTLEMENT_ASSET, amount)
        return ActionDescriptor(
            tx=remote,
            venue=resolved,
            action="bridge_and_withdraw",
            description=f"[Simulated] Withdrawing from {name} on {resolved.chain}, then bridging back to {HOME_CHAIN}",
            is_simulated=True,
            steps=(remote, hop),
        )

    def available_venues(self) -> list[dict[str, Any]]:
        return [
            {
                "name": v.display_name,
                "chain": v.chain,
                "kind": v.spec.kind,
                "description": v.spec.description,
                "available": self.home.is_available(v.display_name) and not v.spec.requires_auth,
                "live": self._is_live(v),
                "network": self.network,
            }
            for v in Venue
        ]

    def format_status(self) -> str:
        return ", ".join(f"{v['name']} ({'live' if v['live'] else 'demo'})" for v in self.available_venues())
