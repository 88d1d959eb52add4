"""
The completion pipeline and memory extraction.
"""
