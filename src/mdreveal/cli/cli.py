"""CLI entrypoint: Typer app definition and command registration"""

import typer

from mdreveal.cli.commands import config_cmd, parse_cmd, stream_cmd


app = typer.Typer(name="mdreveal", no_args_is_help=True, help="Incremental Markdown parsing with a typewriter reveal")

app.command(name="parse")(parse_cmd)
app.command(name="stream")(stream_cmd)
app.command(name="config")(config_cmd)
