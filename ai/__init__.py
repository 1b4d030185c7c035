"""
Oracle Module

Builds prompts for language-model trading bots, drives the bounded
ANALYZE/decide protocol against a model client, and parses replies into
validated decisions.

Core principle: the model only proposes. The ledger stays the hard authority
on what gets opened or closed.
"""
