"""
Process engine CLI
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager

import click
from dotenv import load_dotenv

from .config import EngineSettings
from .core.parser import WorkflowParser
from .core.service import WorkflowService
from .exceptions import WorkflowEngineError
from .models.instance import ExecutionOutcome
from .storage.sqlalchemy_repository import DatabaseManager, SQLAlchemyWorkflowStore


@asynccontextmanager
async def _service(database_url: str):
    settings = EngineSettings.from_env()
    settings.database_url = database_url
    store = SQLAlchemyWorkflowStore(DatabaseManager(database_url))
    await store.initialize()
    try:
        yield WorkflowService(store, settings=settings)
    finally:
        await store.close()


def _run(coro):
    try:
        return asyncio.run(coro)
    except WorkflowEngineError as e:
        raise click.ClickException(f"[{e.code}] {e.message}")


def _json_option(value: str, name: str) -> dict:
    try:
        data = json.loads(value) if value else {}
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint=name)
    if not isinstance(data, dict):
        raise click.BadParameter("expected a JSON object", param_hint=name)
    return data


def _echo_outcome(outcome: ExecutionOutcome):
    instance = outcome.instance
    click.echo(f"Instance: {instance.id}")
    click.echo(f"Status:   {instance.status.value}")
    if instance.active_nodes:
        click.echo(f"Active:   {', '.join(instance.active_nodes)}")
    for token in outcome.tokens_created:
        who = token.assignee or f"role:{token.assigned_role}"
        click.echo(f"Token:    {token.id} ({token.node_id} -> {who})")


@click.group()
@click.option('--database-url', envvar='DATABASE_URL', default=EngineSettings.database_url,
              show_default=True, help='SQLAlchemy async database URL')
@click.option('--log-level', envvar='LOG_LEVEL', default='WARNING', help='Logging level')
@click.pass_context
def cli(ctx, database_url, log_level):
    """Process engine CLI"""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    ctx.ensure_object(dict)
    ctx.obj['database_url'] = database_url


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.pass_context
def serve(ctx, host, port):
    """Start the API server"""
    import uvicorn
    from .api import create_app

    settings = EngineSettings.from_env()
    settings.database_url = ctx.obj['database_url']
    host = host or settings.api_host
    port = port or settings.api_port

    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(create_app(settings=settings), host=host, port=port)


@cli.command()
@click.argument('definition_file', type=click.Path(exists=True, dir_okay=False))
def validate(definition_file):
    """Validate a definition file"""
    try:
        definition = WorkflowParser().parse_file(definition_file)
    except WorkflowEngineError as e:
        raise click.ClickException(e.message)
    click.echo(
        f"Definition {definition.id} v{definition.version} is valid "
        f"({len(definition.nodes)} nodes, {len(definition.edges)} edges)"
    )


@cli.command()
@click.argument('definition_file', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def register(ctx, definition_file):
    """Register a definition file"""
    async def _register():
        async with _service(ctx.obj['database_url']) as service:
            return await service.register_definition(definition_file)

    definition = _run(_register())
    click.echo(f"Registered {definition.id} v{definition.version}")


@cli.command()
@click.argument('definition_id')
@click.option('--version', 'version', type=int, default=None, help='Definition version (latest by default)')
@click.option('--context', 'context_json', default='{}', help='Initial context as a JSON object')
@click.pass_context
def start(ctx, definition_id, version, context_json):
    """Start an instance of a definition"""
    context = _json_option(context_json, '--context')

    async def _start():
        async with _service(ctx.obj['database_url']) as service:
            return await service.start_instance(definition_id, context=context, version=version)

    _echo_outcome(_run(_start()))


@cli.command()
@click.argument('instance_id')
@click.argument('token_id')
@click.option('--result', 'result_json', default='{}', help='Task result as a JSON object')
@click.option('--actor', default=None, help='User completing the task')
@click.pass_context
def complete(ctx, instance_id, token_id, result_json, actor):
    """Complete a work token"""
    result = _json_option(result_json, '--result')

    async def _complete():
        async with _service(ctx.obj['database_url']) as service:
            return await service.complete_task(instance_id, token_id, result, actor)

    _echo_outcome(_run(_complete()))


@cli.command()
@click.argument('instance_id')
@click.pass_context
def cancel(ctx, instance_id):
    """Cancel an instance"""
    async def _cancel():
        async with _service(ctx.obj['database_url']) as service:
            return await service.cancel(instance_id)

    _echo_outcome(_run(_cancel()))


@cli.command()
@click.argument('instance_id')
@click.option('--log', 'show_log', is_flag=True, help='Also print the execution log')
@click.pass_context
def status(ctx, instance_id, show_log):
    """Show instance status, open tokens and context"""
    async def _status():
        async with _service(ctx.obj['database_url']) as service:
            instance = await service.get_status(instance_id)
            tokens = await service.list_tokens(instance_id)
            entries = await service.list_log(instance_id) if show_log else []
            return instance, tokens, entries

    instance, tokens, entries = _run(_status())
    click.echo(f"Instance: {instance.id}")
    click.echo(f"Status:   {instance.status.value} (revision {instance.revision})")
    click.echo(f"Context:  {json.dumps(instance.context, sort_keys=True, default=str)}")
    for token in tokens:
        click.echo(f"Token:    {token.id} {token.node_id} [{token.status.value}]")
    for entry in entries:
        click.echo(f"Log:      {entry.timestamp.isoformat()} {entry.kind.value} {entry.node_id or '-'}")


def main():
    """Main entry point"""
    load_dotenv()
    cli(obj={})


if __name__ == '__main__':
    main()
