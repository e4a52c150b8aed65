import asyncio

import click
import orjson as json

from .. import process
from ..exception import WalletBaseException
from ..methods import BackgroundMethod, PageMethod, PopupMethod
from ..remote import EndpointName

DEFAULT_ROUTES: dict[str, tuple[EndpointName, EndpointName]] = {
    **{
        method.value: (EndpointName.POPUP, EndpointName.BACKGROUND)
        for method in BackgroundMethod
    },
    **{
        method.value: (EndpointName.PAGE, EndpointName.BACKGROUND)
        for method in PageMethod
    },
    PopupMethod.UPDATE_STATE.value: (EndpointName.BACKGROUND, EndpointName.POPUP),
}


async def main(ctx: click.Context) -> None:
    async with process.Application('cli', ctx.obj.options) as app:
        method = app.options['method']
        source, destination = DEFAULT_ROUTES.get(method, (None, None))
        source = app.options['source'] or source
        destination = app.options['destination'] or destination
        if not source or not destination:
            await app.logger.aerror('Route not provided or inferred', method=method)
            return
        runtime = await app.make_runtime()
        endpoint = await app.make_endpoint(runtime, source, destination, context='cli')
        await asyncio.sleep(0.05)
        try:
            if app.options['broadcast']:
                task = endpoint.broadcast(method, *app.options['arguments'])
                await asyncio.wait_for(task, app.options['timeout'])
                await app.logger.ainfo('Broadcast sent', method=method)
                return
            result = await asyncio.wait_for(
                endpoint.call(method, *app.options['arguments']),
                app.options['timeout'],
            )
            await app.logger.ainfo('Remote call succeeded', method=method)
            click.echo(json.dumps(result))
        except asyncio.TimeoutError:
            await app.logger.aerror('Remote call timed out', method=method)
        except (WalletBaseException, ValueError) as exc:
            await app.logger.aerror('Remote call failed', method=method, exc_info=exc)
