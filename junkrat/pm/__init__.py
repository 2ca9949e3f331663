"""
PM (plan management) module for junkrat.

Generates phase plans from requirements, validates them, tracks phase and
task status, and renders plans for export.
"""
