"""
Prism Test Suite
================

Run all tests:
    pytest tests/ -v

Run with coverage:
    pytest tests/ --cov=prism --cov-report=html

Security note: These tests use mocked HTTP calls and fake adapters and
do not require real API keys.
"""
