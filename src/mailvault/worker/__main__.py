from mailvault.worker.main import run

run()
