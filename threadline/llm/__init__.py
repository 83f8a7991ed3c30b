"""Model provider abstraction and the Anthropic implementation."""
