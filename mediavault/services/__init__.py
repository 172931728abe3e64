"""Background services: broadcast hub, activity ledger, scraper, verifier and scheduler."""
