import click


@click.group()
def dcf_watchdog():
    """Firewall whitelist watchdog"""


@dcf_watchdog.command()
def run():
    """Run the whitelist synchronization daemon"""
    from .__main__ import run

    run()


@dcf_watchdog.command()
def bootstrap():
    """Create firewall table, sets and rules, then exit"""
    from .__main__ import bootstrap

    bootstrap()


@dcf_watchdog.command()
def status():
    """Write one status snapshot, then exit"""
    from .__main__ import write_status

    write_status()


if __name__ == '__main__':
    dcf_watchdog()
