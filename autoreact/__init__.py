"""ReAct orchestration runtime: reasoning loop, tool dispatch and chat sessions."""

__version__ = "0.1.0"
