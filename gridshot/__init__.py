"""Portrait-to-shot-grid generation with Gemini."""
