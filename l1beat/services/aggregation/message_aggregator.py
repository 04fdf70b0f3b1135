"""Reduce messages into per chain-pair counts."""

from __future__ import annotations

from collections import Counter
from typing import Iterable, Mapping, Optional

from l1beat.models.schemas import ChainPairCount, TeleporterMessage

UNKNOWN_CHAIN = "Unknown"
BLOCKCHAIN_ID_PREFIX_LEN = 8


def resolve_chain_name(
    evm_chain_id: Optional[str],
    blockchain_id: Optional[str],
    chain_names: Mapping[str, str],
) -> str:
    """Resolve a display name for one side of a message.

    Falls back from the directory name to ``Chain-<evmId>``, then to the
    first characters of the blockchain id, then to ``Unknown``.
    """
    if evm_chain_id:
        name = chain_names.get(str(evm_chain_id))
        if name:
            return name
        return f"Chain-{evm_chain_id}"
    if blockchain_id:
        return blockchain_id[:BLOCKCHAIN_ID_PREFIX_LEN]
    return UNKNOWN_CHAIN


def _sorted_counts(counts: Counter) -> list[ChainPairCount]:
    return [
        ChainPairCount(source_chain=src, destination_chain=dst, message_count=n)
        for (src, dst), n in sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    ]


class MessageAggregator:
    """Counts messages by (source chain name, destination chain name)."""

    def aggregate(
        self,
        messages: Iterable[TeleporterMessage],
        chain_names: Mapping[str, str],
    ) -> list[ChainPairCount]:
        """Aggregate raw messages.

        Args:
            messages: Messages in any order
            chain_names: EVM chain id to display name

        Returns:
            Counts sorted descending; every message is counted once
        """
        counts: Counter = Counter()
        for message in messages:
            source = resolve_chain_name(
                message.source_evm_chain_id, message.source_blockchain_id, chain_names
            )
            destination = resolve_chain_name(
                message.destination_evm_chain_id,
                message.destination_blockchain_id,
                chain_names,
            )
            counts[(source, destination)] += 1
        return _sorted_counts(counts)

    def merge(self, count_lists: Iterable[Iterable[ChainPairCount]]) -> list[ChainPairCount]:
        """Combine already aggregated lists (e.g. the days of a week)."""
        counts: Counter = Counter()
        for count_list in count_lists:
            for item in count_list:
                counts[(item.source_chain, item.destination_chain)] += item.message_count
        return _sorted_counts(counts)
