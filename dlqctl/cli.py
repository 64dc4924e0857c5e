import click
import os
import sys
import json
from .db import Database
from .config import ConfigManager
from .handlers import load_registry
from .logging_utils import setup_logging
from .models import JobStatus
from .processor import DeadLetterQueueProcessor
from .queue import QueueManager
from .version import __version__

DEFAULT_DB_PATH = '.data/dlqctl.db'
STATUS_CHOICES = [status.value for status in JobStatus]


def _open_queue(db_path):
    database = Database(db_path)
    config = ConfigManager(database).get_config()
    return QueueManager(database, config)


def _fail(error):
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.help_option('--help', '-h')
@click.option('--db', 'db_path', envvar='DLQ_DB_PATH', default=DEFAULT_DB_PATH,
              show_default=True, help='Path to the job store database')
@click.pass_context
def cli(ctx, db_path):
    """dlqctl - Dead Letter Queue retry service.

    Failed background jobs are kept in the job store and retried with
    exponential backoff by periodic sweeps until they complete or are
    marked dead.

    Examples:
        dlqctl enqueue analysis --payload '{"analysisId": "a1"}' --error "timeout"
        dlqctl process --handlers myapp.jobs:registry
        dlqctl status
        dlqctl dlq list
    """
    ctx.ensure_object(dict)
    ctx.obj['db_path'] = db_path


@cli.command()
@click.argument('job_type')
@click.option('--payload', default='{}', help='Job payload as a JSON object')
@click.option('--error', help='Error that sent the job to the dead letter queue')
@click.option('--max-attempts', type=int, help='Maximum execution attempts')
@click.option('--id', 'job_id', help='Job ID (optional, auto-generated if not provided)')
@click.pass_context
def enqueue(ctx, job_type, payload, error, max_attempts, job_id):
    """Add a failed job to the dead letter queue.

    Examples:
        dlqctl enqueue email --payload '{"to": "user@example.com"}'
        dlqctl enqueue analysis --id job-1 --max-attempts 5 --error "LLM timeout"
    """
    try:
        try:
            payload_dict = json.loads(payload)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"Invalid JSON: {e}", param_hint='--payload')

        queue_manager = _open_queue(ctx.obj['db_path'])
        result_job_id = queue_manager.add_failed_job(
            job_type, payload_dict, error=error, max_attempts=max_attempts, job_id=job_id
        )
        click.echo(f"Job enqueued successfully with ID: {result_job_id}")

    except Exception as e:
        _fail(e)


@cli.command()
@click.pass_context
def status(ctx):
    """Show job counts by status and recent failures."""
    try:
        queue_manager = _open_queue(ctx.obj['db_path'])
        counts = queue_manager.get_job_counts()
        recent_failures = queue_manager.list_jobs(status=JobStatus.FAILED.value, limit=3)

        click.echo("=== dlqctl Status ===")
        click.echo()
        click.echo("Job Counts:")
        click.echo(f"  Pending:    {counts['pending']}")
        click.echo(f"  Processing: {counts['processing']}")
        click.echo(f"  Failed:     {counts['failed']}")
        click.echo(f"  Dead:       {counts['dead']}")
        click.echo(f"  Completed:  {counts['completed']}")

        if recent_failures:
            click.echo()
            click.echo("Recent Failures:")
            for job in recent_failures:
                error_preview = job.last_error[:50] + "..." if job.last_error and len(job.last_error) > 50 else job.last_error
                click.echo(f"  {job.id}: {error_preview}")

    except Exception as e:
        _fail(e)


def _print_jobs(jobs):
    click.echo(f"{'ID':<38} {'Type':<12} {'Status':<11} {'Attempts':<9} {'Next Retry':<20}")
    click.echo("-" * 92)

    for job in jobs:
        attempts = f"{job.attempts}/{job.max_attempts}"
        next_retry = job.next_retry_at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"{job.id:<38} {job.type[:12]:<12} {job.status.value:<11} {attempts:<9} {next_retry:<20}")


@cli.command('list')
@click.option('--status', 'status_filter', type=click.Choice(STATUS_CHOICES), help='Filter by job status')
@click.option('--type', 'job_type', help='Filter by job type')
@click.option('--limit', default=10, help='Maximum number of jobs to show')
@click.pass_context
def list_jobs(ctx, status_filter, job_type, limit):
    """List jobs, most recently updated first.

    Examples:
        dlqctl list --status failed --limit 20
        dlqctl list --type email
    """
    try:
        queue_manager = _open_queue(ctx.obj['db_path'])
        jobs = queue_manager.list_jobs(status_filter, job_type, limit)

        if not jobs:
            click.echo("No jobs found")
            return

        _print_jobs(jobs)

    except Exception as e:
        _fail(e)


@cli.command()
@click.option('--handlers', envvar='DLQ_HANDLERS', help="Handler registry as 'module:attribute'")
@click.pass_context
def process(ctx, handlers):
    """Run one retry sweep over due jobs and print the result.

    Examples:
        dlqctl process --handlers myapp.jobs:registry
    """
    try:
        setup_logging()
        queue_manager = _open_queue(ctx.obj['db_path'])
        processor = DeadLetterQueueProcessor(queue_manager, load_registry(handlers))
        result = processor.process_retry_queue()

        click.echo(json.dumps({
            **result.to_dict(),
            'recovered': result.recovered,
            'dlqStats': processor.get_stats(),
        }, indent=2))

    except Exception as e:
        _fail(e)


@cli.command()
@click.option('--timeout', type=int, help='Seconds after which a processing claim is stale')
@click.pass_context
def recover(ctx, timeout):
    """Return stale PROCESSING jobs to the queue as failed attempts."""
    try:
        queue_manager = _open_queue(ctx.obj['db_path'])
        recovered = queue_manager.recover_stale_jobs(timeout)
        click.echo(f"Recovered {recovered} stale jobs")
    except Exception as e:
        _fail(e)


@cli.command()
@click.option('--host', default='127.0.0.1', show_default=True)
@click.option('--port', default=8000, show_default=True, type=int)
@click.pass_context
def serve(ctx, host, port):
    """Serve the cron and admin HTTP endpoints."""
    import uvicorn

    os.environ['DLQ_DB_PATH'] = ctx.obj['db_path']
    uvicorn.run('dlqctl.api:create_app_from_env', host=host, port=port, factory=True)


@cli.group()
def dlq():
    """Manage dead jobs (jobs that exhausted their attempts)."""
    pass


@dlq.command('list')
@click.option('--limit', default=10, help='Maximum number of jobs to show')
@click.pass_context
def dlq_list(ctx, limit):
    """List dead jobs."""
    try:
        queue_manager = _open_queue(ctx.obj['db_path'])
        dead_jobs = queue_manager.list_dead_jobs(limit)

        if not dead_jobs:
            click.echo("No dead jobs")
            return

        _print_jobs(dead_jobs)
        click.echo()
        for job in dead_jobs:
            click.echo(f"  {job.id}: {job.last_error}")

    except Exception as e:
        _fail(e)


@dlq.command()
@click.argument('job_id')
@click.pass_context
def retry(ctx, job_id):
    """Requeue a dead job's work as a new job.

    The dead job is kept for the record; a new PENDING job with a fresh
    ID and attempt count is created from its type and payload.

    Examples:
        dlqctl dlq retry abc123
    """
    try:
        queue_manager = _open_queue(ctx.obj['db_path'])
        new_job_id = queue_manager.retry_dead_job(job_id)
        click.echo(f"Job retried successfully with ID: {new_job_id}")
    except Exception as e:
        _fail(e)


@dlq.command()
@click.option('--older-than', type=int, help='Purge jobs not updated for N days')
@click.option('--include-completed', is_flag=True, help='Also purge completed jobs')
@click.option('--force', is_flag=True, help='Confirm purge operation')
@click.pass_context
def purge(ctx, older_than, include_completed, force):
    """Permanently delete dead jobs.

    Examples:
        dlqctl dlq purge --older-than 7 --force
        dlqctl dlq purge --include-completed --force
    """
    try:
        if not force:
            _fail("Purge operation requires --force flag for confirmation")

        statuses = [JobStatus.DEAD]
        if include_completed:
            statuses.append(JobStatus.COMPLETED)

        queue_manager = _open_queue(ctx.obj['db_path'])
        purged = queue_manager.purge_jobs(statuses, older_than)
        click.echo(f"Purged {purged} jobs")

    except Exception as e:
        _fail(e)


@cli.group()
def config():
    """Read and change retry tunables stored in the job store."""
    pass


@config.command('set')
@click.argument('key')
@click.argument('value')
@click.pass_context
def config_set(ctx, key, value):
    try:
        ConfigManager(Database(ctx.obj['db_path'])).set(key, value)
        click.echo(f"Set {key} = {value}")
    except Exception as e:
        _fail(e)


@config.command('get')
@click.argument('key')
@click.pass_context
def config_get(ctx, key):
    try:
        value = ConfigManager(Database(ctx.obj['db_path'])).get(key)
    except Exception as e:
        _fail(e)
    if value is None:
        _fail(f"Configuration key '{key}' not found")
    click.echo(value)


@config.command('list')
@click.pass_context
def config_list(ctx):
    try:
        config_dict = ConfigManager(Database(ctx.obj['db_path'])).list_all()
        for key, value in sorted(config_dict.items()):
            click.echo(f"{key} = {value}")
    except Exception as e:
        _fail(e)


if __name__ == '__main__':
    cli()
