"""Trust-and-sync layer for Formstr clients: relays, envelopes, blobs and local storage."""
