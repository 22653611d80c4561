from vm_operator.main import run

run()
