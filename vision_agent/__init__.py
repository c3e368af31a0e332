"""Conversational vision builder: extraction merge, gap scoring, context budgeting and versioned persistence"""

__version__ = "0.1.0"
