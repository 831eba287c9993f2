# kalina: Conversational assistant engine: planning, context assembly, streamed replies and background memory enrichment.

__version__ = "0.3.0"
