"""OpenAI-compatible Hyperbolic proxy with x402 pay-per-call."""
