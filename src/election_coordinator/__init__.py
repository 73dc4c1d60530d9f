"""Transaction lifecycle coordinator for a blockchain-hosted election contract."""
