from tunnelchain.cli import cli

cli()
