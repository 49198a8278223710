"""repochat: ask questions about a code repository via hybrid retrieval + LLM."""
