"""
LLM chat backends for junkrat.

Providers implement the ChatProvider interface from base.py. The registry
orders them for fallback and the dispatcher wraps calls in retry + fallback.
"""
