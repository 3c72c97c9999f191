"""
Contracts Module

This module defines the explicit data types that form the contracts
between layers. All inter-layer communication MUST use these contracts.

DESIGN PRINCIPLES:
==================
1. All contract types are immutable (frozen dataclasses)
2. All failures are explicit Error values carried in a Result
3. Records that change status carry a revision for conditional writes
4. All timestamps use UTC and are never mutated
5. Hash-based identity for determinism and integrity verification
"""
