"""
Image Server Test Suite

Structure:
- unit/: Unit tests for individual components
- integration/: HTTP-level tests against the FastAPI app
- helpers.py: in-memory Redis double and image builders
"""
