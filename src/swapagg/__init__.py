"""swapagg - multi-DEX swap aggregation for ICRC token ledgers."""

__version__ = "0.1.0"
