"""Checkpoint/resume core: archive driver, codec, blob store, stage machine."""
