"""kg-chatbot - agentic streaming bridge between Claude and a Neo4j knowledge graph."""

__version__ = "0.1.0"

from kg_chatbot.config import Config
from kg_chatbot.main import main

__all__ = ["Config", "main", "__version__"]
