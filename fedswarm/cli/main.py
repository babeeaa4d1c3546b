"""fedswarm command group.

Subcommands live in sibling modules and attach themselves to ``main`` on
import: ``serve`` in server.py, ``sync``/``status``/``health`` in sync.py.
"""

import click

from .. import __version__


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="fedswarm")
@click.pass_context
def main(ctx: click.Context) -> None:
    """Share anonymized experience weights through an aggregation service.

    \b
    fedswarm serve              run the aggregation service
    fedswarm sync -P pats.json  flush, upload, download and merge once
    fedswarm status             print the persisted sync state
    fedswarm health             probe the configured service
    """
    ctx.ensure_object(dict)


from . import server, sync  # noqa: E402,F401

if __name__ == "__main__":
    main()
