"""Reelshop: turns short social videos into shoppable storefronts."""

__version__ = "0.3.0"
