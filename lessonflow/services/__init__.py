"""Service layer: storage, speech, analysis and persistence adapters."""
