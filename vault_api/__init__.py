"""WeightVault storage service: versioned compressed models over HTTP."""
