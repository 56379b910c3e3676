"""Live market data service: Binance streams, indicator fan-out, HTTP API."""
