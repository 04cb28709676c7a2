"""
Command-line interface for docpipe
"""
