"""Core order, payment and payout logic."""
