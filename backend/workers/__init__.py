# Workers run inside the API process; the lifespan in main.py starts them.
#   signal_worker: live quotes -> simulated ledger -> signal evaluation
