"""
CLI entry point, when used as a module: `python -m machinehealth`.

Useful for debugging in the IDEs (use the start-mode "Module", module "machinehealth").
"""
from machinehealth import cli

if __name__ == '__main__':
    cli.main()
