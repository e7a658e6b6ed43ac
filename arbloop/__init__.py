"""Cross-venue cycle arbitrage: detection, risk gating and leg-by-leg execution."""
