"""HTTP layer for Reelshop."""
