"""
Command Line Interface for Panopticon.
"""

import click
from datetime import timezone
from pathlib import Path
from .version import VERSION
from .config import Config, DEFAULT_CONFIG, DEFAULT_CONFIG_PATH
from .context import PanopticonContext
from .data import DataCore
from .data.io import atomic_write, DATA_YAML
from .events import EVENT_TYPES
from .logs import setup_logging
from .manager import ProgressManager
from .models import Status, TaskPriority
from .recovery import PanopticonError

STATUS_ICONS = {
    Status.NOT_STARTED: "⚪",
    Status.IN_PROGRESS: "🔵",
    Status.BLOCKED: "🔴",
    Status.COMPLETED: "✅",
}


def _open_manager(ctx) -> ProgressManager:
    config = Config.load(ctx.obj['config_path'])
    data_dir = ctx.obj['data_dir'] or config.data_dir
    # Logs live next to the data directory: ~/.local/share/panopticon/logs by default
    logger = setup_logging(config.log_level, data_dir.parent / "logs")
    context = PanopticonContext(config=config, logger=logger)
    return ProgressManager(context, DataCore(context, data_dir))


def _run(ctx, action):
    """Open the engine, run ``action`` on it and report engine errors."""
    try:
        with _open_manager(ctx) as manager:
            return action(manager)
    except PanopticonError as e:
        click.echo(f"❌ {e}", err=True)
        ctx.exit(1)


@click.group()
@click.version_option(version=VERSION, prog_name="panopticon")
@click.option('--data-dir', type=click.Path(file_okay=False, path_type=Path), default=None,
              help='Directory holding events.jsonl and snapshot.json')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False, path_type=Path), default=None,
              help=f'Config file (default: {DEFAULT_CONFIG_PATH})')
@click.pass_context
def main(ctx, data_dir, config_path):
    """
    Panopticon - event-sourced progress tracking for projects, milestones and tasks.
    """
    ctx.ensure_object(dict)
    ctx.obj['data_dir'] = data_dir
    ctx.obj['config_path'] = config_path


@main.command()
@click.pass_context
def init(ctx):
    """Write a config file with the default settings."""
    path = ctx.obj['config_path'] or DEFAULT_CONFIG_PATH
    if path.exists():
        click.echo(f"❌ Config already exists: {path}")
        return

    try:
        atomic_write(DATA_YAML, path, DEFAULT_CONFIG, create_dirs=True)
    except PanopticonError as e:
        click.echo(f"❌ Error writing config: {e}", err=True)
        ctx.exit(1)
    click.echo(f"✅ Created {path}")


@main.command()
@click.pass_context
def status(ctx):
    """Show every project with its milestones, tasks and statistics."""
    def show(manager):
        state = manager.state()
        click.echo(f"🔧 Panopticon {VERSION}")
        if not state.projects:
            click.echo("📭 No projects yet")
            click.echo("💡 Use 'panopticon project add TITLE' to create one")
            return

        for project in state.projects.values():
            click.echo(f"{STATUS_ICONS[project.status]} 📁 {project.title} ({project.id})")
            for milestone in state.milestones_of(project.id):
                due = f" due {milestone.due_date.date()}" if milestone.due_date else ""
                click.echo(f"   {STATUS_ICONS[milestone.status]} 🏁 {milestone.title}{due} ({milestone.id})")
                for task in state.tasks_of(milestone.id):
                    blocked = f" - {task.blocked_reason}" if task.blocked_reason else ""
                    click.echo(f"      {STATUS_ICONS[task.status]} {task.title} [{task.estimated_points:g} pts]{blocked} ({task.id})")

        stats = state.statistics
        click.echo("")
        click.echo(f"📋 Tasks: {stats.completed_tasks}/{stats.total_tasks} completed")
        click.echo(f"🎯 Points: {stats.earned_points:g}/{stats.total_points:g} earned")
        click.echo(f"⏱️  Pace: {stats.average_points_per_hour:.2f} points/hour")

    _run(ctx, show)


@main.command()
@click.option('--type', 'kind', type=click.Choice(sorted(EVENT_TYPES)), help='Only events of this kind')
@click.option('--entity', help='Only events referring to this project, milestone or task id')
@click.pass_context
def events(ctx, kind, entity):
    """List logged events in log order."""
    def show(manager):
        history = manager.history(kind=kind, entity_id=entity)
        if not history:
            click.echo("📭 No events found")
            return
        for event in history:
            click.echo(f"{event.timestamp.isoformat()} {event.type} {' '.join(event.entity_ids())}")

    _run(ctx, show)


@main.command()
@click.pass_context
def snapshot(ctx):
    """Write a snapshot of the current state now."""
    def save(manager):
        manager.save_snapshot()
        click.echo(f"✅ Snapshot written at event {manager.state().event_count}")

    _run(ctx, save)


@main.group()
def project():
    """Manage projects."""
    pass

@project.command('add')
@click.argument('title')
@click.option('--description', help='What the project is about')
@click.pass_context
def project_add(ctx, title, description):
    """Create a project."""
    project_id = _run(ctx, lambda m: m.create_project(title, description))
    click.echo(f"✅ Created project {project_id}")

@project.command('update')
@click.argument('project_id')
@click.option('--title', help='New title')
@click.option('--description', help='New description')
@click.pass_context
def project_update(ctx, project_id, title, description):
    """Change a project's title or description."""
    _run(ctx, lambda m: m.update_project(project_id, title, description))
    click.echo(f"✅ Updated project {project_id}")

@project.command('delete')
@click.argument('project_id')
@click.confirmation_option(prompt='Delete the project with all its milestones and tasks?')
@click.pass_context
def project_delete(ctx, project_id):
    """Delete a project with its milestones and tasks."""
    _run(ctx, lambda m: m.delete_project(project_id))
    click.echo(f"🗑️  Deleted project {project_id}")


@main.group()
def milestone():
    """Manage milestones."""
    pass

@milestone.command('add')
@click.argument('project_id')
@click.argument('title')
@click.option('--description', help='Why do we need this milestone?')
@click.option('--due', type=click.DateTime(formats=['%Y-%m-%d']), help='Due date (YYYY-MM-DD)')
@click.pass_context
def milestone_add(ctx, project_id, title, description, due):
    """Add a milestone to a project."""
    due_date = due.replace(tzinfo=timezone.utc) if due else None
    milestone_id = _run(ctx, lambda m: m.create_milestone(project_id, title, description, due_date))
    click.echo(f"✅ Created milestone {milestone_id}")

@milestone.command('move')
@click.argument('milestone_id')
@click.argument('project_id')
@click.pass_context
def milestone_move(ctx, milestone_id, project_id):
    """Move a milestone to another project."""
    _run(ctx, lambda m: m.move_milestone(milestone_id, project_id))
    click.echo(f"✅ Moved milestone {milestone_id} to project {project_id}")

@milestone.command('depend')
@click.argument('milestone_id')
@click.argument('depends_on')
@click.option('--remove', is_flag=True, help='Remove the dependency instead of adding it')
@click.pass_context
def milestone_depend(ctx, milestone_id, depends_on, remove):
    """Make MILESTONE_ID wait for DEPENDS_ON."""
    if remove:
        _run(ctx, lambda m: m.remove_milestone_dependency(milestone_id, depends_on))
        click.echo(f"✅ {milestone_id} no longer depends on {depends_on}")
    else:
        _run(ctx, lambda m: m.add_milestone_dependency(milestone_id, depends_on))
        click.echo(f"✅ {milestone_id} now depends on {depends_on}")

@milestone.command('delete')
@click.argument('milestone_id')
@click.confirmation_option(prompt='Delete the milestone with all its tasks?')
@click.pass_context
def milestone_delete(ctx, milestone_id):
    """Delete a milestone with its tasks."""
    _run(ctx, lambda m: m.delete_milestone(milestone_id))
    click.echo(f"🗑️  Deleted milestone {milestone_id}")


@main.group()
def task():
    """Manage tasks."""
    pass

@task.command('add')
@click.argument('milestone_id')
@click.argument('title')
@click.option('--description', help='Why do we need this task?')
@click.option('--points', type=float, default=1, show_default=True, help='Estimated effort in points')
@click.option('--priority', type=click.Choice([p.value for p in TaskPriority]), default=TaskPriority.MUST.value,
              show_default=True)
@click.option('--tag', 'tags', multiple=True, help='Label, may be repeated')
@click.pass_context
def task_add(ctx, milestone_id, title, description, points, priority, tags):
    """Add a task to a milestone."""
    task_id = _run(ctx, lambda m: m.create_task(milestone_id, title, description, points, TaskPriority(priority), tags))
    click.echo(f"✅ Created task {task_id}")

@task.command('start')
@click.argument('task_id')
@click.pass_context
def task_start(ctx, task_id):
    """Start working on a task."""
    _run(ctx, lambda m: m.start_task(task_id))
    click.echo(f"🔵 Started task {task_id}")

@task.command('block')
@click.argument('task_id')
@click.argument('reason')
@click.pass_context
def task_block(ctx, task_id, reason):
    """Mark an in-progress task as blocked."""
    _run(ctx, lambda m: m.block_task(task_id, reason))
    click.echo(f"🔴 Blocked task {task_id}: {reason}")

@task.command('unblock')
@click.argument('task_id')
@click.pass_context
def task_unblock(ctx, task_id):
    """Resume a blocked task."""
    _run(ctx, lambda m: m.unblock_task(task_id))
    click.echo(f"🔵 Unblocked task {task_id}")

@task.command('complete')
@click.argument('task_id')
@click.option('--points', type=float, default=None, help='Actual points (default: the estimate)')
@click.pass_context
def task_complete(ctx, task_id, points):
    """Complete an in-progress task."""
    _run(ctx, lambda m: m.complete_task(task_id, points))
    click.echo(f"✅ Completed task {task_id}")

@task.command('log')
@click.argument('task_id')
@click.argument('minutes', type=float)
@click.option('--description', help='What the time was spent on')
@click.pass_context
def task_log(ctx, task_id, minutes, description):
    """Report minutes spent on a task."""
    _run(ctx, lambda m: m.log_time(task_id, minutes, description))
    click.echo(f"⏱️  Logged {minutes:g} min on task {task_id}")

@task.command('depend')
@click.argument('task_id')
@click.argument('depends_on')
@click.option('--remove', is_flag=True, help='Remove the dependency instead of adding it')
@click.pass_context
def task_depend(ctx, task_id, depends_on, remove):
    """Make TASK_ID wait for DEPENDS_ON."""
    if remove:
        _run(ctx, lambda m: m.remove_task_dependency(task_id, depends_on))
        click.echo(f"✅ {task_id} no longer depends on {depends_on}")
    else:
        _run(ctx, lambda m: m.add_task_dependency(task_id, depends_on))
        click.echo(f"✅ {task_id} now depends on {depends_on}")

@task.command('move')
@click.argument('task_id')
@click.argument('milestone_id')
@click.pass_context
def task_move(ctx, task_id, milestone_id):
    """Move a task to another milestone."""
    _run(ctx, lambda m: m.move_task(task_id, milestone_id))
    click.echo(f"✅ Moved task {task_id} to milestone {milestone_id}")

@task.command('delete')
@click.argument('task_id')
@click.confirmation_option(prompt='Delete the task?')
@click.pass_context
def task_delete(ctx, task_id):
    """Delete a task."""
    _run(ctx, lambda m: m.delete_task(task_id))
    click.echo(f"🗑️  Deleted task {task_id}")

if __name__ == "__main__":
    main()
