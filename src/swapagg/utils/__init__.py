"""Utility modules for swapagg."""

from swapagg.utils.concurrency import Settled, gather_settled, partition

__all__ = ["Settled", "gather_settled", "partition"]
