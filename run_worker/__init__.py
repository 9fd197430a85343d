"""Execution worker for submitted browser scripts.

One worker process owns exactly one run: it acquires a fresh Chromium page, runs
the submitted script once against it, takes a full-page screenshot and writes the
three run artifacts (data.json, screenshot.png, logs.txt) to the artifact store.
Failures after the browser is up are recorded in logs.txt instead of aborting the
run, and the process always exits 0 once the run has started.
"""
