"""Command-line management and query surface.

Every command loads the workspace snapshot from the configured storage
path, runs one operation and saves the snapshot again if it changed.

Usage:
    embedding-index import notes data/notes.jsonl --name "Lab notes"
    embedding-index search "fly lines used in the gradient assay" -k 5
    embedding-index set-weight notes 1.5
    embedding-index -o storage.base_path=/tmp/index collections
"""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from loguru import logger

from embedding_index.config import EmbeddingIndexConfig, load_config
from embedding_index.errors import EmbeddingIndexError
from embedding_index.models import ReductionStrategy
from embedding_index.workspace import Workspace

T = TypeVar("T")


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level, format="<level>{message}</level>")


def _run(
    ctx: click.Context,
    action: Callable[[Workspace], Awaitable[T]],
    *,
    save: bool = False,
    save_registry: bool = False,
) -> T:
    """Run an async workspace action, turning library errors into CLI errors.

    `save` snapshots everything afterwards; `save_registry` only the registry.
    """
    config: EmbeddingIndexConfig = ctx.obj["config"]

    async def runner() -> T:
        workspace = Workspace(config)
        await workspace.load()
        result = await action(workspace)
        if save:
            await workspace.save()
        elif save_registry:
            workspace.save_registry()
        return result

    try:
        return asyncio.run(runner())
    except (EmbeddingIndexError, ValueError) as e:
        raise click.ClickException(str(e)) from e


def _read_jsonl(path: Path) -> list[dict[str, Any]]:
    records = []
    with open(path, encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise click.ClickException(f"{path}:{line_number}: invalid JSON ({e})") from e
    return records


@click.group()
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Config directory (defaults to conf/embedding_index/)",
)
@click.option("--config-name", default="default", show_default=True, help="Config file name")
@click.option(
    "-o", "--override", "overrides", multiple=True, help="Config override, e.g. index.bits=8"
)
@click.option("--log-level", default="INFO", show_default=True, help="Logging level")
@click.pass_context
def cli(
    ctx: click.Context,
    config_dir: Path | None,
    config_name: str,
    overrides: tuple[str, ...],
    log_level: str,
) -> None:
    """Manage and query embedding collections."""
    configure_logging(log_level.upper())
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config_name, config_dir, list(overrides))


@cli.command("collections")
@click.option("--active-only", is_flag=True, help="Only list active collections")
@click.pass_context
def list_collections(ctx: click.Context, active_only: bool) -> None:
    """List collections, most recently accessed first."""

    async def action(workspace: Workspace):
        return workspace.registry.list_collections(active_only=active_only)

    metas = _run(ctx, action)
    if not metas:
        click.echo("No collections")
        return
    for meta in metas:
        status = "active" if meta.active else "inactive"
        click.echo(
            f"{meta.id}\t{meta.name}\tweight={meta.weight:.2f}\t{status}\t"
            f"nodes={meta.node_count}\tlast_accessed={meta.last_accessed.isoformat()}"
        )


@cli.command("import")
@click.argument("collection_id")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--name", default=None, help="Collection name (new collections only)")
@click.option("--weight", type=float, default=1.0, help="Collection weight (new collections only)")
@click.pass_context
def import_collection(
    ctx: click.Context, collection_id: str, path: Path, name: str | None, weight: float
) -> None:
    """Import JSON Lines records into a collection.

    Each record is {"id", "embedding", "payload"?} or {"id", "text", "payload"?};
    text records are embedded with the configured model.
    """
    records = _read_jsonl(path)
    with_vectors = [r for r in records if "embedding" in r]
    with_text = [r for r in records if "embedding" not in r]
    missing = [r.get("id") for r in with_text if "text" not in r]
    if missing:
        raise click.ClickException(f"Records without embedding or text: {missing[:5]}")

    async def action(workspace: Workspace):
        fields = {"name": name, "weight": weight}
        meta = await workspace.import_nodes(collection_id, with_vectors, **fields)
        if with_text:
            meta = await workspace.import_texts(collection_id, with_text, **fields)
        return meta

    meta = _run(ctx, action, save=True)
    click.echo(f"Imported {len(records)} records into {meta.id} ({meta.node_count} nodes)")


@cli.command("search")
@click.argument("query")
@click.option("-k", "--top-k", "k", type=int, default=None, help="Number of results")
@click.option(
    "-c", "--collection", "collections", multiple=True, help="Restrict to these collections"
)
@click.option("--vector", is_flag=True, help="QUERY is a JSON array embedding")
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON")
@click.pass_context
def search(
    ctx: click.Context,
    query: str,
    k: int | None,
    collections: tuple[str, ...],
    vector: bool,
    as_json: bool,
) -> None:
    """Federated search across active collections."""
    if vector:
        try:
            parsed = json.loads(query)
        except json.JSONDecodeError as e:
            raise click.ClickException(f"Invalid vector: {e}") from e
        if not isinstance(parsed, list):
            raise click.ClickException("Vector query must be a JSON array")
        query_input: str | list[float] = [float(x) for x in parsed]
    else:
        query_input = query

    async def action(workspace: Workspace):
        return await workspace.federated_search(
            query_input, k=k, collection_ids=collections or None
        )

    # Access times change on every search with hits
    hits = _run(ctx, action, save_registry=True)

    if as_json:
        click.echo(json.dumps([hit.model_dump() for hit in hits], indent=2))
        return
    if not hits:
        click.echo("No results")
        return
    for rank, hit in enumerate(hits, start=1):
        click.echo(f"{rank:>3}. {hit.score:.4f}  {hit.collection_id}/{hit.node_id}")


@cli.command("set-weight")
@click.argument("collection_id")
@click.argument("weight", type=float)
@click.pass_context
def set_weight(ctx: click.Context, collection_id: str, weight: float) -> None:
    """Set a collection's ranking weight (clamped to [0.1, 2.0])."""

    async def action(workspace: Workspace):
        return workspace.registry.set_weight(collection_id, weight)

    meta = _run(ctx, action, save_registry=True)
    click.echo(f"{meta.id}: weight={meta.weight:.2f}")


@cli.command("set-active")
@click.argument("collection_id")
@click.option("--on/--off", "active", default=True, help="Include in federated search")
@click.pass_context
def set_active(ctx: click.Context, collection_id: str, active: bool) -> None:
    """Include or exclude a collection from federated search."""

    async def action(workspace: Workspace):
        return workspace.registry.set_active(collection_id, active)

    meta = _run(ctx, action, save_registry=True)
    click.echo(f"{meta.id}: {'active' if meta.active else 'inactive'}")


@cli.command("delete")
@click.argument("collection_id")
@click.pass_context
def delete(ctx: click.Context, collection_id: str) -> None:
    """Delete a collection and its snapshot."""

    async def action(workspace: Workspace):
        return await workspace.delete_collection(collection_id)

    if _run(ctx, action, save=True):
        click.echo(f"Deleted {collection_id}")
    else:
        click.echo(f"Collection {collection_id} does not exist")


@cli.command("refit")
@click.argument("collection_id")
@click.option("--dims", type=int, default=None, help="Reduced dimensions")
@click.option("--bits", type=int, default=None, help="Bits per coordinate")
@click.option(
    "--reduction",
    type=click.Choice([s.value for s in ReductionStrategy]),
    default=None,
    help="Reduction strategy",
)
@click.pass_context
def refit(
    ctx: click.Context,
    collection_id: str,
    dims: int | None,
    bits: int | None,
    reduction: str | None,
) -> None:
    """Re-fit quantization parameters and re-encode every node."""

    async def action(workspace: Workspace):
        return await workspace.refit(collection_id, dims=dims, bits=bits, reduction=reduction)

    params = _run(ctx, action, save=True)
    click.echo(
        f"{collection_id}: dims={params.dims} bits={params.bits} "
        f"reduction={params.reduction.value}"
    )


@cli.command("batch-search")
@click.argument("queries_file", type=click.File("r", encoding="utf-8"))
@click.option("-k", "--top-k", "k", type=int, default=None, help="Results per query")
@click.option(
    "-c", "--collection", "collections", multiple=True, help="Restrict to these collections"
)
@click.pass_context
def batch_search(
    ctx: click.Context, queries_file, k: int | None, collections: tuple[str, ...]
) -> None:
    """Run one federated search per line of QUERIES_FILE ("-" for stdin) and print JSON."""
    queries = [line.strip() for line in queries_file if line.strip()]

    async def action(workspace: Workspace):
        return await workspace.batch_search(queries, k=k, collection_ids=collections or None)

    results = _run(ctx, action, save_registry=True)
    click.echo(
        json.dumps(
            {query: [hit.model_dump() for hit in hits] for query, hits in results.items()},
            indent=2,
        )
    )


@cli.command("nodes")
@click.argument("collection_id")
@click.option("--limit", type=click.IntRange(min=0), default=100, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
@click.pass_context
def list_nodes(ctx: click.Context, collection_id: str, limit: int, offset: int) -> None:
    """List a collection's node ids and payloads, one page at a time."""

    async def action(workspace: Workspace):
        return await workspace.list_nodes(collection_id, limit=limit, offset=offset)

    for node in _run(ctx, action):
        click.echo(f"{node.id}\t{json.dumps(node.payload)}")


@cli.command("node")
@click.argument("collection_id")
@click.argument("node_id")
@click.option("--with-embedding", is_flag=True, help="Include the full embedding")
@click.pass_context
def show_node(ctx: click.Context, collection_id: str, node_id: str, with_embedding: bool) -> None:
    """Show one node as JSON."""

    async def action(workspace: Workspace):
        return await workspace.get_node(collection_id, node_id)

    node = _run(ctx, action)
    exclude = None if with_embedding else {"embedding"}
    click.echo(json.dumps(node.model_dump(exclude=exclude), indent=2))


@cli.command("stats")
@click.argument("collection_id", required=False)
@click.pass_context
def stats(ctx: click.Context, collection_id: str | None) -> None:
    """Show registry statistics, or one collection's index statistics."""

    async def action(workspace: Workspace):
        if collection_id is None:
            return workspace.registry.stats()
        return await workspace.collection_stats(collection_id)

    result = _run(ctx, action)
    click.echo(json.dumps(result.model_dump(mode="json"), indent=2))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
