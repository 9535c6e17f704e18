#!/usr/bin/env python3
"""
CLI for the edge_inference router and RAG engine.

Every command builds an InferenceManager from a settings YAML (see
edge_inference.settings) and shuts it down when done.

Usage:
    edgeinf models -c edge.yaml
    edgeinf ingest notes.md s3://bucket/guide.txt -c edge.yaml --store docs
    edgeinf query "What helps search by meaning?" -c edge.yaml --store docs --top-k 3
    edgeinf chat -c edge.yaml -m "How does semantic search work?" --stream
    edgeinf models --downloaded
    edgeinf cache download gemma-3-1b --manifest models.yaml
    edgeinf --version
"""

import asyncio
import json
import logging
from pathlib import PurePosixPath
from typing import Any, Awaitable, Callable, Dict, List, Optional

import fsspec
import typer
from pydantic import ValidationError

from edge_inference import __version__
from edge_inference.chat import render_prompt
from edge_inference.exceptions import EdgeInferenceError
from edge_inference.manager import InferenceManager
from edge_inference.settings import ChatSessionConfig, InferenceSettings, RetrievalConfig, load_settings

app = typer.Typer(
    name="edgeinf",
    help="Edge Inference - adaptive on-device/cloud model routing with RAG",
    no_args_is_help=True,
    add_completion=False,
)

EXIT_COMMANDS = ("exit", "quit", "/exit", "/quit")


def setup_logging(verbose: int, quiet: bool):
    """Configure logging based on verbosity flags."""
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose >= 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s"
    )


def parse_filter(value: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Parse a metadata filter from a JSON object string.

    Raises:
        typer.Exit: On invalid JSON or a non-object value
    """
    if value is None:
        return None
    try:
        result = json.loads(value)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: Invalid JSON in --filter: {e}", err=True)
        raise typer.Exit(1)
    if not isinstance(result, dict):
        typer.echo(f"Error: --filter must be a JSON object, got {type(result).__name__}", err=True)
        raise typer.Exit(1)
    return result


def read_source(uri: str) -> str:
    """Read a text source through fsspec (local path or remote URI)."""
    with fsspec.open(uri, "r", encoding="utf-8") as f:
        return f.read()


def get_settings(config: Optional[str], policy: Optional[str]) -> InferenceSettings:
    try:
        return load_settings(config, overrides={"policy": policy})
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {config}", err=True)
        raise typer.Exit(1)
    except (ValidationError, ValueError) as e:
        typer.echo(f"Error: Invalid settings: {e}", err=True)
        raise typer.Exit(1)


def run_with_manager(
    settings: InferenceSettings, body: Callable[[InferenceManager], Awaitable[None]]
) -> None:
    """Build a manager, run body with it and shut it down, mapping errors to exit 1."""

    async def runner():
        manager = await InferenceManager.from_settings(settings)
        async with manager:
            await body(manager)

    try:
        asyncio.run(runner())
    except EdgeInferenceError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def default_store(settings: InferenceSettings, store: Optional[str]) -> str:
    if store:
        return store
    if settings.chat.retrieval is not None:
        return settings.chat.retrieval.store_id
    if len(settings.vector_stores) == 1:
        return settings.vector_stores[0].id
    typer.echo("Error: --store is required when the settings define no single store", err=True)
    raise typer.Exit(1)


ConfigOption = typer.Option(None, "--config", "-c", help="Settings YAML (path or fsspec URI)")
PolicyOption = typer.Option(None, "--policy", "-p", help="Inference policy override")
VerboseOption = typer.Option(0, "--verbose", "-v", count=True, help="Increase verbosity (-v, -vv)")
QuietOption = typer.Option(False, "--quiet", "-q", help="Suppress non-error output")


@app.command()
def models(
    config: Optional[str] = ConfigOption,
    downloaded: bool = typer.Option(False, "--downloaded", help="List cached on-device models instead"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """List configured adapters without loading them."""
    setup_logging(verbose, quiet)
    settings = get_settings(config, None)

    async def body(manager: InferenceManager):
        if downloaded:
            cached = [
                {"id": model_id, "path": str(manager.model_path(model_id))}
                for model_id in manager.downloaded_models()
            ]
            if as_json:
                typer.echo(json.dumps(cached, indent=2))
            elif not cached:
                typer.echo(f"No models cached in {manager.models.cache_dir}.")
            else:
                for info in cached:
                    typer.echo(f"  {info['id']:<30} {info['path']}")
            return

        adapters = await manager.list_adapters()
        if as_json:
            typer.echo(json.dumps(adapters, indent=2))
            return
        if not adapters:
            typer.echo("No adapters configured.")
            return
        typer.echo(f"Policy: {manager.default_policy.value}")
        for info in adapters:
            typer.echo(
                f"  {info['id']:<20} {info['origin']:<10} {info['framework']:<12} "
                f"priority={info['priority']} [{', '.join(info['capabilities'])}]"
            )

    run_with_manager(settings, body)


@app.command()
def ingest(
    sources: List[str] = typer.Argument(..., help="Files or fsspec URIs to ingest"),
    config: Optional[str] = ConfigOption,
    store: Optional[str] = typer.Option(None, "--store", "-s", help="Target vector store id"),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", help="Maximum chunk size in characters"),
    overlap: Optional[int] = typer.Option(None, "--overlap", help="Characters shared by consecutive chunks"),
    policy: Optional[str] = PolicyOption,
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """Chunk, embed and store text sources. Source ids are file names."""
    setup_logging(verbose, quiet)
    settings = get_settings(config, policy)
    store_id = default_store(settings, store)
    retrieval = settings.chat.retrieval or RetrievalConfig(store_id=store_id)
    size = chunk_size if chunk_size is not None else retrieval.max_chunk_size
    shared = overlap if overlap is not None else retrieval.chunk_overlap

    async def body(manager: InferenceManager):
        vector_store = manager.vector_store(store_id)
        for source in sources:
            try:
                text = read_source(source)
            except FileNotFoundError:
                typer.echo(f"Error: Source not found: {source}", err=True)
                raise typer.Exit(1)
            try:
                documents = await vector_store.add_chunked_document(
                    PurePosixPath(source).name,
                    text,
                    metadata={"source": source},
                    max_chunk_size=size,
                    overlap=shared,
                )
            except ValueError as e:
                typer.echo(f"Error: {e}", err=True)
                raise typer.Exit(1)
            if not quiet:
                typer.echo(f"Ingested {source}: {len(documents)} chunk(s)")
        if not quiet:
            typer.echo(f"Store '{store_id}' now holds {await vector_store.count()} document(s)")

    run_with_manager(settings, body)


@app.command()
def query(
    text: str = typer.Argument(..., help="Query text"),
    config: Optional[str] = ConfigOption,
    store: Optional[str] = typer.Option(None, "--store", "-s", help="Vector store id"),
    top_k: int = typer.Option(3, "--top-k", "-k", help="Maximum number of results"),
    min_similarity: Optional[float] = typer.Option(None, "--min-similarity", help="Similarity threshold"),
    filter: Optional[str] = typer.Option(None, "--filter", "-f", help="Metadata filter as a JSON object"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
    policy: Optional[str] = PolicyOption,
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """Rank stored documents by similarity to TEXT."""
    setup_logging(verbose, quiet)
    settings = get_settings(config, policy)
    store_id = default_store(settings, store)
    metadata_filter = parse_filter(filter)
    if top_k < 1:
        typer.echo("Error: --top-k must be >= 1", err=True)
        raise typer.Exit(1)

    async def body(manager: InferenceManager):
        hits = await manager.vector_store(store_id).query(
            text, top_k=top_k, min_similarity=min_similarity, metadata_filter=metadata_filter
        )
        if as_json:
            typer.echo(json.dumps([hit.to_dict() for hit in hits], indent=2))
            return
        if not hits:
            typer.echo("No matching documents.")
            return
        for rank, hit in enumerate(hits, start=1):
            typer.echo(f"{rank}. [{hit.score:.4f}] {hit.id}: {hit.text}")

    run_with_manager(settings, body)


@app.command()
def chat(
    config: Optional[str] = ConfigOption,
    message: Optional[str] = typer.Option(None, "--message", "-m", help="Send one message and exit"),
    store: Optional[str] = typer.Option(None, "--store", "-s", help="Retrieve context from this store"),
    system_prompt: Optional[str] = typer.Option(None, "--system", help="System prompt override"),
    stream: bool = typer.Option(False, "--stream", help="Print tokens as they arrive"),
    show_context: bool = typer.Option(False, "--show-context", help="Print retrieved document ids"),
    show_prompt: bool = typer.Option(False, "--show-prompt", help="Print the prompt sent to the model"),
    policy: Optional[str] = PolicyOption,
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """Chat with retrieval-augmented generation (interactive unless -m is given)."""
    setup_logging(verbose, quiet)
    settings = get_settings(config, policy)

    session_config: ChatSessionConfig = settings.chat.model_copy(deep=True)
    if system_prompt is not None:
        session_config.system_prompt = system_prompt
    if store is not None:
        retrieval = session_config.retrieval or RetrievalConfig(store_id=store)
        session_config.retrieval = retrieval.model_copy(update={"store_id": store})

    async def turn(manager: InferenceManager, session, text: str):
        if stream:
            async with await manager.send_turn(session, text, stream=True) as tokens:
                async for chunk in tokens:
                    typer.echo(chunk, nl=False)
                typer.echo("")
                response = tokens.response()
        else:
            response = await manager.send_turn(session, text)
            typer.echo(response.text)
        if show_prompt:
            typer.echo(render_prompt(response.prompt), err=True)
        if show_context and response.documents:
            ids = ", ".join(f"{doc.id} ({doc.score:.2f})" for doc in response.documents)
            typer.echo(f"[context: {ids}]", err=True)
        if verbose and response.logical_id:
            suffix = " (fallback)" if response.fell_back else ""
            typer.echo(f"[answered by {response.logical_id}{suffix}]", err=True)

    async def body(manager: InferenceManager):
        session = manager.create_chat_session(session_config)
        if message is not None:
            await turn(manager, session, message)
            return
        typer.echo("Type 'exit' to quit.", err=True)
        while True:
            try:
                text = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            text = text.strip()
            if not text:
                continue
            if text.lower() in EXIT_COMMANDS:
                break
            await turn(manager, session, text)

    run_with_manager(settings, body)


# Model cache subcommands

cache_app = typer.Typer(
    name="cache",
    help="Manage the on-device model cache",
    no_args_is_help=True,
)
app.add_typer(cache_app, name="cache")

ManifestOption = typer.Option(None, "--manifest", help="Model manifest (overrides the settings)")


def get_cache_settings(config: Optional[str], manifest: Optional[str]) -> InferenceSettings:
    settings = get_settings(config, None)
    if manifest is not None:
        settings.models = settings.models.model_copy(update={"manifest": manifest})
    return settings


@cache_app.command("download")
def cache_download(
    model_id: str = typer.Argument(..., help="Manifest model id"),
    config: Optional[str] = ConfigOption,
    manifest: Optional[str] = ManifestOption,
    force: bool = typer.Option(False, "--force", help="Download again even if cached"),
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """Download a manifest model and verify its checksum."""
    setup_logging(verbose, quiet)
    settings = get_cache_settings(config, manifest)

    async def body(manager: InferenceManager):
        path = await manager.download_model(model_id, force=force)
        if not quiet:
            typer.echo(f"Model '{model_id}' cached at {path}")

    run_with_manager(settings, body)


@cache_app.command("info")
def cache_info(
    model_id: str = typer.Argument(..., help="Adapter id or manifest model id"),
    config: Optional[str] = ConfigOption,
    manifest: Optional[str] = ManifestOption,
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """Show a model's descriptor and cache status as JSON."""
    setup_logging(verbose, quiet)
    settings = get_cache_settings(config, manifest)

    async def body(manager: InferenceManager):
        info = (await manager.model_info(model_id)).to_dict()
        path = manager.model_path(model_id)
        info["downloaded"] = path is not None
        info["path"] = str(path) if path is not None else None
        typer.echo(json.dumps(info, indent=2))

    run_with_manager(settings, body)


@cache_app.command("delete")
def cache_delete(
    model_id: str = typer.Argument(..., help="Cached model id"),
    config: Optional[str] = ConfigOption,
    manifest: Optional[str] = ManifestOption,
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """Remove a model from the cache."""
    setup_logging(verbose, quiet)
    settings = get_cache_settings(config, manifest)

    async def body(manager: InferenceManager):
        if manager.delete_model(model_id):
            if not quiet:
                typer.echo(f"Deleted cached model '{model_id}'")
        else:
            typer.echo(f"Model '{model_id}' is not cached", err=True)
            raise typer.Exit(1)

    run_with_manager(settings, body)


def version_callback(value: bool):
    """Handle --version flag."""
    if value:
        typer.echo(f"edgeinf {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(None, "--version", callback=version_callback, is_eager=True,
                                 help="Show version and exit"),
):
    """Edge Inference - adaptive on-device/cloud model routing with RAG."""


def main():
    """Entry point for the edgeinf CLI."""
    app()


if __name__ == "__main__":
    main()
