"""Webhook intake: worker pool and pipeline wiring."""
