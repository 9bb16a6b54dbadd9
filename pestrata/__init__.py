"""PEStrata - structural integrity analysis for Portable Executable (PE) files.

@QK
"""

__version__ = "0.1.0"
