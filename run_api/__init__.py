"""
HTTP control plane for browser-script runs: script CRUD, submit (dispatch a
worker), and retrieval of a run's artifacts.
"""
