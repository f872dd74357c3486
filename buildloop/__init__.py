"""BuildLoop - generation orchestration engine for an AI app builder"""

__version__ = "1.0.0"
