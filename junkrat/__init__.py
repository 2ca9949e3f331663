"""
junkrat: requirements in, validated phase plans out.

Drives a conversation from free-form requirements to a phase plan and then
executes that plan task by task against interchangeable LLM backends.
"""

__version__ = "0.4.0"
