"""
Quill - Storylet Rule-Language Engine

An embeddable engine for interactive-fiction content whose storylets are
gated and mutated through a small rule language. The engine provides:
- Tokenizing and parsing of conditions, text templates and effect lists
- Evaluation against a character's qualities and a shared world overlay
- Pyramidal quality leveling
- Effect application with change records
- Equipment validation
"""

__version__ = "0.1.0"
