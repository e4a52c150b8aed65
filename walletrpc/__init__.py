import click

from . import process

__version__ = '0.1.0'


async def main(ctx: click.Context) -> None:
    async with process.Application('hub', ctx.obj.options) as app:
        hub = await app.make_hub()
        app.stack.callback(app.report_health().cancel)
        await hub.route_task
