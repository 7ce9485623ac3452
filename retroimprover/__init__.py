"""RetroImprover backend: photo restoration, animation prompts and video generation."""
