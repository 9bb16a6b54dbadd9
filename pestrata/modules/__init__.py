"""Structural building blocks: headers, sections, addresses, directories, signals.

@QK
"""
