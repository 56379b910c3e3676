"""Core logic for the indicator stream: models, indicators and decoding.

This package contains pure logic with no I/O dependencies (no network,
no event loop). The live service in market_stream/ builds on it.
"""
