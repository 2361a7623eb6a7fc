"""HTTP trigger surface: decomposition, manual linking and coherence checks."""
