# streambuild/runtime/__init__.py
"""
Runtime - directive parsing and serialized action execution.
"""
