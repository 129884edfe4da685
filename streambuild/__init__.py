# streambuild/__init__.py
"""
StreamBuild - turns streamed model output into files, commands and a live preview.
"""
__version__ = "1.0.0"
