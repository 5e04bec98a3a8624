"""Data models for the orchestrator and their on-disk (camelCase) forms."""

from dataclasses import dataclass, field

TASK_TYPES = ("research", "setup", "implement", "test", "integrate")

AGENT_STATUSES = ("starting", "standby", "assigned", "active", "completed", "terminated")

MESSAGE_KINDS = ("question", "notification", "task_complete")
PRIORITIES = ("low", "normal", "high", "blocking")


@dataclass
class Project:
    name: str
    description: str = ""
    created: str | None = None
    status: str = "active"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "created": self.created,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Project":
        return cls(
            name=data.get("name", ""),
            description=data.get("description", ""),
            created=data.get("created"),
            status=data.get("status", "active"),
        )


@dataclass
class Task:
    id: str
    type: str
    branch: str
    agent: str
    description: str
    depends_on: list[str] = field(default_factory=list)
    capability: str | None = None
    status: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "type": self.type,
            "branch": self.branch,
            "agent": self.agent,
            "description": self.description,
            "depends_on": list(self.depends_on),
        }
        if self.capability:
            data["capability"] = self.capability
        if self.status:
            data["status"] = self.status
        if self.reason:
            data["reason"] = self.reason
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        return cls(
            id=str(data["id"]),
            type=data.get("type", ""),
            branch=data.get("branch", ""),
            agent=data.get("agent", ""),
            description=data.get("description", ""),
            depends_on=[str(d) for d in data.get("depends_on") or []],
            capability=data.get("capability"),
            status=data.get("status"),
            reason=data.get("reason"),
        )

    @property
    def preferred_capability(self) -> str:
        return self.capability or self.type


@dataclass
class Agent:
    id: str
    role: str
    type: str
    capabilities: list[str] = field(default_factory=list)
    status: str = "starting"
    current_task: str | None = None
    workspace: str | None = None
    pid: int | None = None
    persistent: bool = True
    registered_at: str | None = None
    last_seen: str | None = None
    terminated_at: str | None = None
    exit_code: int | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "type": self.type,
            "capabilities": list(self.capabilities),
            "status": self.status,
            "currentTask": self.current_task,
            "workspace": self.workspace,
            "pid": self.pid,
            "persistent": self.persistent,
            "registeredAt": self.registered_at,
            "lastSeen": self.last_seen,
            "terminatedAt": self.terminated_at,
            "exitCode": self.exit_code,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Agent":
        return cls(
            id=data["id"],
            role=data.get("role", ""),
            type=data.get("type", ""),
            capabilities=list(data.get("capabilities") or []),
            status=data.get("status", "starting"),
            current_task=data.get("currentTask"),
            workspace=data.get("workspace"),
            pid=data.get("pid"),
            persistent=data.get("persistent", True),
            registered_at=data.get("registeredAt"),
            last_seen=data.get("lastSeen"),
            terminated_at=data.get("terminatedAt"),
            exit_code=data.get("exitCode"),
        )


@dataclass
class Assignment:
    id: str
    agent_id: str
    task_id: str
    branch: str
    description: str
    status: str = "pending"
    assigned_at: str | None = None
    accepted_at: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "taskId": self.task_id,
            "branch": self.branch,
            "description": self.description,
            "status": self.status,
            "assignedAt": self.assigned_at,
            "acceptedAt": self.accepted_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Assignment":
        return cls(
            id=data["id"],
            agent_id=data.get("agentId", ""),
            task_id=data.get("taskId", ""),
            branch=data.get("branch", ""),
            description=data.get("description", ""),
            status=data.get("status", "pending"),
            assigned_at=data.get("assignedAt"),
            accepted_at=data.get("acceptedAt"),
        )


@dataclass
class Message:
    """An outbox entry. ``payload`` is stored as ``question`` or ``message``."""

    id: str
    sender: str
    to: str
    kind: str
    payload: str
    priority: str = "normal"
    status: str = "pending"
    timestamp: str | None = None
    task: str | None = None
    context: str | None = None
    escalated_from: str | None = None
    escalated_to_user: bool = False
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = {
            "id": self.id,
            "from": self.sender,
            "to": self.to,
            "type": self.kind,
            "priority": self.priority,
            "status": self.status,
            "timestamp": self.timestamp,
            "task": self.task,
        }
        out["question" if self.kind == "question" else "message"] = self.payload
        if self.context:
            out["context"] = self.context
        if self.escalated_from:
            out["escalatedFrom"] = self.escalated_from
        if self.escalated_to_user:
            out["escalatedToUser"] = True
        if self.data:
            out["data"] = dict(self.data)
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=data["id"],
            sender=data.get("from", ""),
            to=data.get("to", ""),
            kind=data.get("type", "notification"),
            payload=data.get("question") or data.get("message") or "",
            priority=data.get("priority", "normal"),
            status=data.get("status", "pending"),
            timestamp=data.get("timestamp"),
            task=data.get("task"),
            context=data.get("context"),
            escalated_from=data.get("escalatedFrom"),
            escalated_to_user=bool(data.get("escalatedToUser", False)),
            data=dict(data.get("data") or {}),
        )


@dataclass
class InboxEntry:
    """A reply (``reply_to`` set) or a delivery from the PM to an agent."""

    id: str
    sender: str
    body: str
    timestamp: str | None = None
    reply_to: str | None = None
    to: str | None = None
    kind: str | None = None
    broadcast_id: str | None = None
    read: bool = False

    def to_dict(self) -> dict:
        out = {
            "id": self.id,
            "from": self.sender,
            "timestamp": self.timestamp,
            "read": self.read,
        }
        if self.reply_to:
            out["replyTo"] = self.reply_to
            out["answer"] = self.body
        else:
            out["message"] = self.body
        if self.to:
            out["to"] = self.to
        if self.kind:
            out["type"] = self.kind
        if self.broadcast_id:
            out["broadcastId"] = self.broadcast_id
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "InboxEntry":
        return cls(
            id=data["id"],
            sender=data.get("from", ""),
            body=data.get("answer") or data.get("message") or "",
            timestamp=data.get("timestamp"),
            reply_to=data.get("replyTo"),
            to=data.get("to"),
            kind=data.get("type"),
            broadcast_id=data.get("broadcastId"),
            read=bool(data.get("read", False)),
        )
