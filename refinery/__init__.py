"""Signal intelligence pipeline: ingest, scrub, detect, synthesize."""
