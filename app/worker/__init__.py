# Referral intake pipeline workers: one pool per stage (ocr, classification, extraction, scoring).
# Entry point: ``python -m app.worker.main`` (see app/worker/main.py).
