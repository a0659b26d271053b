from innodb_poller.main import cli

cli()
