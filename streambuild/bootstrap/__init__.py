# streambuild/bootstrap/__init__.py
"""
Bootstrap - install, dev server supervision, remediation and static fallback.
"""
