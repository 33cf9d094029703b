from chisme_client.main import run

run()
