"""Observe every message carried by the hub.

The monitor attaches to the hub as a passive context. It never answers, so it never
changes the outcome of a call.
"""

from typing import NoReturn

import click

from .. import process
from ..transport import RuntimeNode


async def watch(node: RuntimeNode, app: process.Application) -> NoReturn:
    while True:
        message, responder = await node.recv()
        node.respond(responder, None)
        if isinstance(message, dict):
            await app.logger.ainfo(
                'Runtime message',
                type=message.get('type'),
                method=message.get('method'),
                message_id=message.get('id'),
                source=message.get('source'),
                destination=message.get('destination'),
            )
            if app.options['log_messages']:
                await app.logger.adebug('Runtime message payload', message=message)
        else:
            await app.logger.awarning('Runtime message is not a mapping', message=message)


async def main(ctx: click.Context) -> None:
    async with process.Application('monitor', ctx.obj.options) as app:
        runtime = await app.make_runtime()
        node = await app.stack.enter_async_context(RuntimeNode(runtime, context='monitor'))
        app.stack.callback(app.report_health().cancel)
        await app.logger.ainfo('Monitor attached to hub')
        await watch(node, app)
