"""Streaming inference gateway and its client orchestration layer.

Server side:
  - Message Normalizer (caller input → ordered turns)
  - Upstream adapter (Gemini generateContent / streamGenerateContent)
  - Relay (chunks, then the terminal JSON envelope)

Client side:
  - Concurrency-bounded FIFO Task Queue
  - Retry Policy (exponential backoff on 429/503, no jitter)
  - Stream decoder for the envelope protocol
"""
