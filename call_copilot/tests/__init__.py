"""
Call copilot test suite.
"""
