"""Execution orchestration engine.

Resolves per-item execution parameters from sparse option lists, validates
option combinations up front, and drives the query sequence against an
execution backend under the configured loop / async / failure policy.

The backend is opaque: the engine only decides *what* to submit, *in what
order*, *with which resolved parameters*, and *how to react to outcomes*.
"""
