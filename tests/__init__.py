"""
TradeGuard Test Suite

Test Structure:
- tests/fraud/ - Analyzers, rules, scoring and the detection client
- tests/infrastructure/ - State store backends
- tests/utils/ - Logging and exceptions

Run all tests: pytest
Run unit tests only: pytest -m unit
"""
