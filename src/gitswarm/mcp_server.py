"""MCP server exposing permission, consensus and workspace operations to agents."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from gitswarm.config import GitswarmConfig, load_config, validate_config
from gitswarm.consensus import ConsensusEngine
from gitswarm.db import Database
from gitswarm.event_stream import EventStream
from gitswarm.models import ConsensusDecision, FileResolution, Maintainer, Repository
from gitswarm.permissions import PermissionResolver
from gitswarm.streams import StreamLifecycle
from gitswarm.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

server = Server("gitswarm")


@dataclass
class ServerContext:
	"""Long-lived engine objects shared by every tool call."""

	config: GitswarmConfig
	db: Database
	permissions: PermissionResolver
	consensus: ConsensusEngine
	streams: StreamLifecycle
	workspaces: WorkspaceManager
	events: EventStream | None = None

	@classmethod
	def from_config(cls, config: GitswarmConfig) -> ServerContext:
		db = Database(config.storage.resolved_db_path)
		events = None
		if config.events.path:
			events = EventStream(Path(config.events.path).expanduser())
			events.open()
		streams = StreamLifecycle(db, events)
		return cls(
			config=config,
			db=db,
			permissions=PermissionResolver(db),
			consensus=ConsensusEngine(db),
			streams=streams,
			workspaces=WorkspaceManager(config, db, events=events, streams=streams),
			events=events,
		)

	def sweep_stale_streams(self) -> list[str]:
		"""Abandon streams idle longer than ``streams.stale_after_days``."""
		days = self.config.streams.stale_after_days
		if days <= 0:
			logger.warning("Stale stream sweep disabled (stale_after_days=%d)", days)
			return []
		abandoned = self.streams.abandon_stale_streams(days)
		if abandoned:
			logger.info("Abandoned %d stale stream(s)", len(abandoned))
		return [s.id for s in abandoned]

	async def close(self) -> None:
		await self.workspaces.close_all()
		if self.events is not None:
			self.events.close()
		self.db.close()


_context: ServerContext | None = None


def _load_server_config() -> GitswarmConfig:
	path = os.environ.get("GITSWARM_CONFIG", "gitswarm.toml")
	if Path(path).exists():
		return load_config(path)
	logger.info("No config at %s; using defaults", path)
	return GitswarmConfig()


def _get_context() -> ServerContext:
	global _context
	if _context is None:
		_context = ServerContext.from_config(_load_server_config())
	return _context


# -- Tool definitions --

_REPO = {"type": "string", "description": "Repository id"}
_AGENT = {"type": "string", "description": "Acting agent id"}
_STREAM = {"type": "string", "description": "Stream id"}

TOOLS = [
	Tool(
		name="resolve_permissions",
		description="Resolve an agent's effective access level on a repository.",
		inputSchema={
			"type": "object",
			"properties": {"agent_id": _AGENT, "repo_id": _REPO},
			"required": ["agent_id", "repo_id"],
		},
	),
	Tool(
		name="can_perform",
		description="Check whether an agent may perform read/write/merge/settings/delete.",
		inputSchema={
			"type": "object",
			"properties": {
				"agent_id": _AGENT,
				"repo_id": _REPO,
				"action": {"type": "string", "enum": ["read", "write", "merge", "settings", "delete"]},
			},
			"required": ["agent_id", "repo_id", "action"],
		},
	),
	Tool(
		name="can_push_to_branch",
		description="Check branch protection rules for a direct push.",
		inputSchema={
			"type": "object",
			"properties": {"agent_id": _AGENT, "repo_id": _REPO, "branch": {"type": "string"}},
			"required": ["agent_id", "repo_id", "branch"],
		},
	),
	Tool(
		name="check_consensus",
		description="Compute whether a stream's reviews reach merge consensus.",
		inputSchema={
			"type": "object",
			"properties": {"repo_id": _REPO, "stream_id": _STREAM},
			"required": ["repo_id", "stream_id"],
		},
	),
	Tool(
		name="submit_for_review",
		description="Mark a stream as ready for review.",
		inputSchema={
			"type": "object",
			"properties": {"stream_id": _STREAM},
			"required": ["stream_id"],
		},
	),
	Tool(
		name="submit_review",
		description="Record or replace a reviewer's verdict on a stream.",
		inputSchema={
			"type": "object",
			"properties": {
				"stream_id": _STREAM,
				"reviewer_id": _AGENT,
				"verdict": {"type": "string", "enum": ["approve", "request_changes", "reject", "comment"]},
				"feedback": {"type": "string"},
				"tested": {"type": "boolean"},
				"is_human": {"type": "boolean"},
			},
			"required": ["stream_id", "reviewer_id", "verdict"],
		},
	),
	Tool(
		name="register_repo",
		description="Register a repository using the configured default branches. The caller becomes its owner.",
		inputSchema={
			"type": "object",
			"properties": {
				"repo_id": _REPO,
				"agent_id": _AGENT,
				"name": {"type": "string"},
				"org_id": {"type": "string"},
				"clone_url": {"type": "string"},
				"ownership_model": {"type": "string", "enum": ["solo", "guild", "open"]},
			},
			"required": ["repo_id", "agent_id"],
		},
	),
	Tool(
		name="init_repo",
		description="Create or reuse the local clone for a repository. Requires admin access.",
		inputSchema={
			"type": "object",
			"properties": {"repo_id": _REPO, "agent_id": _AGENT, "clone_source": {"type": "string"}},
			"required": ["repo_id", "agent_id"],
		},
	),
	Tool(
		name="create_stream",
		description="Create a stream branch and point the agent's worktree at it.",
		inputSchema={
			"type": "object",
			"properties": {
				"repo_id": _REPO,
				"agent_id": _AGENT,
				"name": {"type": "string"},
				"base_branch": {"type": "string"},
				"parent_stream_id": {"type": "string", "description": "Fork from this stream"},
			},
			"required": ["repo_id", "agent_id"],
		},
	),
	Tool(
		name="write_file",
		description="Write and stage a file in the agent's worktree.",
		inputSchema={
			"type": "object",
			"properties": {
				"repo_id": _REPO, "agent_id": _AGENT,
				"path": {"type": "string"}, "content": {"type": "string"},
			},
			"required": ["repo_id", "agent_id", "path", "content"],
		},
	),
	Tool(
		name="read_file",
		description="Read a file from the agent's worktree.",
		inputSchema={
			"type": "object",
			"properties": {"repo_id": _REPO, "agent_id": _AGENT, "path": {"type": "string"}},
			"required": ["repo_id", "agent_id", "path"],
		},
	),
	Tool(
		name="delete_file",
		description="Delete a file from the agent's worktree and stage the removal.",
		inputSchema={
			"type": "object",
			"properties": {"repo_id": _REPO, "agent_id": _AGENT, "path": {"type": "string"}},
			"required": ["repo_id", "agent_id", "path"],
		},
	),
	Tool(
		name="list_files",
		description="List tracked and staged files in the agent's worktree.",
		inputSchema={
			"type": "object",
			"properties": {"repo_id": _REPO, "agent_id": _AGENT, "subdir": {"type": "string"}},
			"required": ["repo_id", "agent_id"],
		},
	),
	Tool(
		name="commit_changes",
		description="Commit staged changes to the agent's current (or given) stream.",
		inputSchema={
			"type": "object",
			"properties": {
				"repo_id": _REPO, "agent_id": _AGENT,
				"message": {"type": "string"}, "stream_id": _STREAM,
			},
			"required": ["repo_id", "agent_id", "message"],
		},
	),
	Tool(
		name="merge_to_buffer",
		description="Merge a stream into the buffer branch once consensus is reached.",
		inputSchema={
			"type": "object",
			"properties": {"repo_id": _REPO, "stream_id": _STREAM},
			"required": ["repo_id", "stream_id"],
		},
	),
	Tool(
		name="resolve_conflict",
		description="Complete a conflicting buffer merge with resolved file contents.",
		inputSchema={
			"type": "object",
			"properties": {
				"repo_id": _REPO,
				"stream_id": _STREAM,
				"resolutions": {
					"type": "array",
					"items": {
						"type": "object",
						"properties": {"path": {"type": "string"}, "content": {"type": "string"}},
						"required": ["path", "content"],
					},
				},
			},
			"required": ["repo_id", "stream_id", "resolutions"],
		},
	),
	Tool(
		name="promote",
		description="Fast-forward trunk to the buffer tip. Requires merge permission.",
		inputSchema={
			"type": "object",
			"properties": {"repo_id": _REPO, "agent_id": _AGENT},
			"required": ["repo_id", "agent_id"],
		},
	),
	Tool(
		name="get_buffer_state",
		description="Get the current buffer branch tip commit.",
		inputSchema={
			"type": "object",
			"properties": {"repo_id": _REPO},
			"required": ["repo_id"],
		},
	),
	Tool(
		name="abandon_stream",
		description="Abandon an active stream. Allowed for its owner or agents with merge access. The branch is kept.",
		inputSchema={
			"type": "object",
			"properties": {"stream_id": _STREAM, "agent_id": _AGENT, "reason": {"type": "string"}},
			"required": ["stream_id", "agent_id"],
		},
	),
	Tool(
		name="report_stabilization",
		description="Report a green/red test run against a buffer commit.",
		inputSchema={
			"type": "object",
			"properties": {
				"repo_id": _REPO,
				"result": {"type": "string", "enum": ["green", "red"]},
				"buffer_commit": {"type": "string"},
				"breaking_stream_id": _STREAM,
				"output": {"type": "string"},
			},
			"required": ["repo_id", "result", "buffer_commit"],
		},
	),
	Tool(
		name="get_history",
		description="Recent merges, promotions and stabilization reports for a repository.",
		inputSchema={
			"type": "object",
			"properties": {"repo_id": _REPO, "limit": {"type": "integer"}},
			"required": ["repo_id"],
		},
	),
]


@server.list_tools()
async def list_tools() -> list[Tool]:
	return TOOLS


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
	ctx = _get_context()
	try:
		result = await _dispatch(name, arguments, ctx)
		return [TextContent(type="text", text=json.dumps(result, indent=2))]
	except Exception as e:
		logger.warning("Tool %s failed: %s", name, e)
		return [TextContent(type="text", text=json.dumps({"error": str(e)}))]


async def _dispatch(name: str, args: dict, ctx: ServerContext) -> dict:
	if name == "resolve_permissions":
		return ctx.permissions.resolve(args["agent_id"], args["repo_id"]).to_dict()
	elif name == "can_perform":
		return ctx.permissions.can_perform(args["agent_id"], args["repo_id"], args["action"]).to_dict()
	elif name == "can_push_to_branch":
		return ctx.permissions.can_push_to_branch(
			args["agent_id"], args["repo_id"], args["branch"],
		).to_dict()
	elif name == "check_consensus":
		return ctx.consensus.check_consensus(args["stream_id"], args["repo_id"]).to_dict()
	elif name == "submit_for_review":
		return {"stream": ctx.streams.submit_for_review(args["stream_id"]).to_dict()}
	elif name == "submit_review":
		return _tool_submit_review(ctx, args)
	elif name == "register_repo":
		return _tool_register_repo(ctx, args)
	elif name == "init_repo":
		_require_action(ctx, args["agent_id"], args["repo_id"], "settings")
		ws = await ctx.workspaces.init_repo(args["repo_id"], args.get("clone_source"))
		return {"repo_id": ws.repo_id, "path": str(ws.path)}
	elif name == "create_stream":
		return await _tool_create_stream(ctx, args)
	elif name == "write_file":
		_require_action(ctx, args["agent_id"], args["repo_id"], "write")
		await ctx.workspaces.write_file(args["repo_id"], args["agent_id"], args["path"], args["content"])
		return {"written": args["path"]}
	elif name == "read_file":
		content = await ctx.workspaces.read_file(args["repo_id"], args["agent_id"], args["path"])
		return {"path": args["path"], "content": content}
	elif name == "delete_file":
		_require_action(ctx, args["agent_id"], args["repo_id"], "write")
		await ctx.workspaces.delete_file(args["repo_id"], args["agent_id"], args["path"])
		return {"deleted": args["path"]}
	elif name == "list_files":
		files = await ctx.workspaces.list_files(args["repo_id"], args["agent_id"], args.get("subdir", ""))
		return {"files": files, "count": len(files)}
	elif name == "commit_changes":
		_require_action(ctx, args["agent_id"], args["repo_id"], "write")
		commit = await ctx.workspaces.commit_changes(
			args["repo_id"], args["agent_id"], args["message"], args.get("stream_id"),
		)
		return asdict(commit)
	elif name == "merge_to_buffer":
		return await _tool_merge_to_buffer(ctx, args)
	elif name == "resolve_conflict":
		return await _tool_resolve_conflict(ctx, args)
	elif name == "promote":
		decision = ctx.permissions.can_perform(args["agent_id"], args["repo_id"], "merge")
		if not decision.allowed:
			return {"promoted": False, "error": "insufficient_permissions", "permissions": decision.permissions.to_dict()}
		result = await ctx.workspaces.promote(args["repo_id"], agent_id=args["agent_id"])
		return result.to_dict()
	elif name == "get_buffer_state":
		return asdict(await ctx.workspaces.get_buffer_state(args["repo_id"]))
	elif name == "abandon_stream":
		return _tool_abandon_stream(ctx, args)
	elif name == "report_stabilization":
		outcome = await ctx.workspaces.report_stabilization(
			args["repo_id"],
			args["result"],
			args["buffer_commit"],
			breaking_stream_id=args.get("breaking_stream_id"),
			output=args.get("output", ""),
		)
		return outcome.to_dict()
	elif name == "get_history":
		return _tool_get_history(ctx, args)
	else:
		return {"error": f"Unknown tool: {name}"}


def _require_action(ctx: ServerContext, agent_id: str, repo_id: str, action: str) -> None:
	decision = ctx.permissions.can_perform(agent_id, repo_id, action)
	if not decision.allowed:
		raise PermissionError(
			f"{agent_id} may not {action} on {repo_id} "
			f"({decision.permissions.level} via {decision.permissions.source})"
		)


def _tool_register_repo(ctx: ServerContext, args: dict) -> dict:
	repo_id = args["repo_id"]
	if ctx.db.get_repo(repo_id) is not None:
		raise ValueError(f"Repository {repo_id} already exists")
	defaults = ctx.config.defaults
	repo = Repository(
		id=repo_id,
		org_id=args.get("org_id"),
		name=args.get("name", repo_id),
		ownership_model=args.get("ownership_model", "guild"),
		buffer_branch=defaults.buffer_branch,
		promote_target=defaults.promote_target,
		clone_url=args.get("clone_url"),
	)
	ctx.db.insert_repo(repo)
	ctx.db.upsert_maintainer(Maintainer(repo_id=repo_id, agent_id=args["agent_id"], role="owner"))
	logger.info("Registered repository %s (owner %s)", repo_id, args["agent_id"])
	return {
		"repo_id": repo.id,
		"buffer_branch": repo.buffer_branch,
		"promote_target": repo.promote_target,
		"owner": args["agent_id"],
	}


def _tool_submit_review(ctx: ServerContext, args: dict) -> dict:
	review = ctx.streams.submit_review(
		args["stream_id"],
		args["reviewer_id"],
		args["verdict"],
		feedback=args.get("feedback", ""),
		tested=bool(args.get("tested", False)),
		is_human=args.get("is_human"),
	)
	stream = ctx.streams.require(args["stream_id"])
	decision = ctx.consensus.check_consensus(stream.id, stream.repo_id)
	return {"review": asdict(review), "consensus": decision.to_dict()}


async def _tool_create_stream(ctx: ServerContext, args: dict) -> dict:
	_require_action(ctx, args["agent_id"], args["repo_id"], "write")
	handle = await ctx.workspaces.create_stream(
		args["repo_id"],
		args["agent_id"],
		name=args.get("name", ""),
		base_branch=args.get("base_branch"),
		parent_stream_id=args.get("parent_stream_id"),
	)
	return asdict(handle)


def _tool_abandon_stream(ctx: ServerContext, args: dict) -> dict:
	stream = ctx.streams.require(args["stream_id"])
	agent_id = args["agent_id"]
	if stream.agent_id != agent_id:
		_require_action(ctx, agent_id, stream.repo_id, "merge")
	abandoned = ctx.streams.abandon(stream.id, args.get("reason", ""))
	return {"stream": abandoned.to_dict(), "abandoned_by": agent_id}


def _blocked_by_consensus(decision: ConsensusDecision) -> dict:
	return {"kind": "failed", "reason": "consensus_not_reached", "consensus": decision.to_dict()}


async def _tool_merge_to_buffer(ctx: ServerContext, args: dict) -> dict:
	decision = ctx.consensus.check_consensus(args["stream_id"], args["repo_id"])
	if not decision.reached:
		return _blocked_by_consensus(decision)
	outcome = await ctx.workspaces.merge_to_buffer(args["repo_id"], args["stream_id"])
	result = outcome.to_dict()
	result["consensus"] = decision.to_dict()
	return result


async def _tool_resolve_conflict(ctx: ServerContext, args: dict) -> dict:
	decision = ctx.consensus.check_consensus(args["stream_id"], args["repo_id"])
	if not decision.reached:
		return _blocked_by_consensus(decision)
	resolutions = [FileResolution(path=r["path"], content=r["content"]) for r in args["resolutions"]]
	outcome = await ctx.workspaces.resolve_conflict(args["repo_id"], args["stream_id"], resolutions)
	result = outcome.to_dict()
	result["consensus"] = decision.to_dict()
	return result


def _tool_get_history(ctx: ServerContext, args: dict) -> dict:
	repo_id = args["repo_id"]
	limit = int(args.get("limit", 20))
	return {
		"merges": [asdict(m) for m in ctx.db.get_merges(repo_id, limit)],
		"promotions": [asdict(p) for p in ctx.db.get_promotions(repo_id, limit)],
		"stabilizations": [asdict(s) for s in ctx.db.get_stabilizations(repo_id, limit)],
	}


def run_mcp_server() -> None:
	"""Entry point for the ``gitswarm-mcp`` console script."""
	import asyncio

	config = _load_server_config()
	logging.basicConfig(
		level=getattr(logging, config.logging.level, logging.INFO),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	for level, message in validate_config(config):
		if level == "error":
			logger.error("Config: %s", message)
		else:
			logger.warning("Config: %s", message)

	global _context
	_context = ServerContext.from_config(config)
	_context.sweep_stale_streams()

	async def _run():
		try:
			async with stdio_server() as (read_stream, write_stream):
				await server.run(read_stream, write_stream, server.create_initialization_options())
		finally:
			await _context.close()

	asyncio.run(_run())
