"""KOL wallet PnL ranking, snapshot and wager settlement engine."""

__version__ = "0.1.0"
