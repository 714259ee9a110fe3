#!/usr/bin/env python3
"""
deploy_watcher.py
Git → go build → systemd redeployer for one repository checked out once per environment.

Key behaviors:
  • Environments:
      each entry binds a branch to a local working copy and a systemd service
      environments are processed one at a time, in configured order
  • Change detection:
      HEAD is read before and after `git pull`; a different hash means deploy.
      Nothing is remembered between cycles, so a quiet cycle is one read,
      one pull and one read.
  • Pipeline:
      go build → sudo cp into install_dir → sudo systemctl restart
      stops at the first failing stage
  • Credentials:
      origin is rewritten to an https URL, with user:token embedded when use_auth is set
  • Slack notifications on deploy and on failure (never for "no new changes")
  • Step logging with LOG_STEPS / log_steps
"""

import os, re, sys, time, json, socket, traceback, subprocess
import http.client
import urllib.error, urllib.parse, urllib.request
from pathlib import Path
from datetime import datetime
from typing import Callable, List, NamedTuple, Optional, Tuple
import yaml
from dotenv import load_dotenv

__version__ = "0.1.0"

# ---------- basics

def now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

def host() -> str:
    return socket.gethostname()

def as_bool(val, default=False) -> bool:
    if val is None:
        return default
    if isinstance(val, bool):
        return val
    return str(val).lower() in ("true", "1", "yes", "y", "on")

LOG_STEPS = as_bool(os.environ.get("LOG_STEPS", "false"))

# None means stdout, resolved on every write
_log_sink = None

def open_log_sink(path) -> None:
    global _log_sink
    p = Path(path).expanduser()
    p.parent.mkdir(parents=True, exist_ok=True)
    _log_sink = open(p, "a", encoding="utf-8")

def close_log_sink() -> None:
    global _log_sink
    if _log_sink is not None:
        _log_sink.close()
    _log_sink = None

def log(msg: str, step: bool = False) -> None:
    if step and not LOG_STEPS:
        return
    print(f"[{now()}] {msg}", file=_log_sink or sys.stdout, flush=True)

# ---------- errors

class ConfigError(RuntimeError): pass

class DeployError(RuntimeError):
    """A failed stage of a deploy attempt; `stage` names it, `diagnostic` carries tool output."""

    stage = "deploy"

    def __init__(self, diagnostic: str, stage: Optional[str] = None):
        if stage:
            self.stage = stage
        self.diagnostic = (diagnostic or "").strip()
        super().__init__(f"{self.stage} failed: {self.diagnostic}")

class TrackerError(DeployError):
    stage = "git"

class MergeConflictError(TrackerError):
    stage = "git pull"

class BuildError(DeployError):
    stage = "build"

class InstallError(DeployError):
    stage = "copy"

class RestartError(DeployError):
    stage = "systemctl restart"

class NotifyFailure(RuntimeError): pass

# ---------- command runner

class CommandResult(NamedTuple):
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

Runner = Callable[..., CommandResult]

def run(args: List[str], cwd: Optional[Path] = None, combine: bool = True) -> CommandResult:
    """Run argv without a shell. combine=False keeps stderr out of a successful output."""
    argv = [str(a) for a in args]
    if LOG_STEPS:
        log(f"RUN: {redact_url(' '.join(argv))} (cwd={cwd})", step=True)
    env = os.environ.copy()
    # never block the loop on a credential prompt
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    try:
        result = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            text=True,
            encoding="utf-8",
            errors="replace",
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if combine else subprocess.PIPE,
            env=env,
        )
    except OSError as e:
        return CommandResult(127, f"{type(e).__name__}: {e}")
    output = result.stdout or ""
    if not combine and result.returncode != 0 and result.stderr:
        output = f"{output}{result.stderr}"
    return CommandResult(result.returncode, output)

def _diagnostic(result: CommandResult) -> str:
    return f"exit status {result.returncode} - {result.output.strip()}"

# ---------- config

class Environment(NamedTuple):
    branch: str
    dir: Path
    service_name: str

class GitConfig(NamedTuple):
    username: str = ""
    token: str = ""
    repo_owner: str = ""
    repo_name: str = ""
    use_auth: bool = False
    host: str = "github.com"

class SlackConfig(NamedTuple):
    enabled: bool = False
    webhook_url: str = ""

class BuildConfig(NamedTuple):
    command: str = "go"
    source_path: str = "cmd"
    binary_name: str = "notify-hub"
    install_dir: str = "/usr/local/bin"
    sudo: bool = True

class Settings(NamedTuple):
    environments: Tuple[Environment, ...]
    log_file: str = ""
    interval_seconds: int = 60
    git: GitConfig = GitConfig()
    slack: SlackConfig = SlackConfig()
    build: BuildConfig = BuildConfig()
    log_steps: bool = False

ENV_ONLY_PATTERN = re.compile(r"^\$\{([^}]+)\}$")

def interpolate_env(obj):
    if isinstance(obj, dict):
        return {k: interpolate_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [interpolate_env(x) for x in obj]
    if isinstance(obj, str):
        m = ENV_ONLY_PATTERN.match(obj)
        if m:
            return os.environ.get(m.group(1), "")
        return re.sub(r"\$\{([^}]+)\}", lambda m: os.environ.get(m.group(1), ""), obj)
    return obj

def _section(cfg: dict, name: str) -> dict:
    value = cfg.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return value

def _text(d: dict, key: str, default: str = "") -> str:
    value = d.get(key)
    return default if value is None else str(value).strip()

def parse_settings(cfg: dict) -> Settings:
    cfg = interpolate_env(cfg)

    envs: List[Environment] = []
    raw_envs = cfg.get("environments") or []
    if not isinstance(raw_envs, list):
        raise ConfigError("'environments' must be a list")
    for i, e in enumerate(raw_envs):
        if not isinstance(e, dict):
            raise ConfigError(f"environments[{i}] must be a mapping")
        missing = [k for k in ("branch", "dir", "service_name") if not _text(e, k)]
        if missing:
            raise ConfigError(f"environments[{i}] missing {', '.join(missing)}")
        envs.append(Environment(_text(e, "branch"), Path(_text(e, "dir")).expanduser(), _text(e, "service_name")))
    if not envs:
        raise ConfigError("no environments configured")

    try:
        interval = int(cfg.get("interval_seconds", os.environ.get("POLL_INTERVAL_SECONDS", 60)))
    except (TypeError, ValueError):
        raise ConfigError(f"interval_seconds must be an integer, got {cfg.get('interval_seconds')!r}") from None
    if interval <= 0:
        raise ConfigError(f"interval_seconds must be positive, got {interval}")

    g = _section(cfg, "git_config")
    git = GitConfig(
        username=_text(g, "username"),
        token=_text(g, "token") or os.environ.get("GIT_TOKEN", ""),
        repo_owner=_text(g, "repo_owner"),
        repo_name=_text(g, "repo_name"),
        use_auth=as_bool(g.get("use_auth")),
        host=_text(g, "host") or GitConfig().host,
    )
    if not git.repo_owner or not git.repo_name:
        raise ConfigError("git_config needs repo_owner and repo_name")
    if git.use_auth and not (git.username and git.token):
        raise ConfigError("git_config.use_auth requires username and token")

    s = _section(cfg, "slack")
    slack = SlackConfig(
        enabled=as_bool(s.get("enabled")),
        webhook_url=_text(s, "webhook_url") or os.environ.get("SLACK_WEBHOOK_URL", ""),
    )

    b = _section(cfg, "build")
    defaults = BuildConfig()
    build_cfg = BuildConfig(
        command=_text(b, "command") or defaults.command,
        source_path=_text(b, "source_path") or defaults.source_path,
        binary_name=_text(b, "binary_name") or defaults.binary_name,
        install_dir=_text(b, "install_dir") or defaults.install_dir,
        sudo=as_bool(b.get("sudo"), default=defaults.sudo),
    )

    return Settings(
        environments=tuple(envs),
        log_file=_text(cfg, "log_file"),
        interval_seconds=interval,
        git=git,
        slack=slack,
        build=build_cfg,
        log_steps=as_bool(cfg.get("log_steps"), default=as_bool(os.environ.get("LOG_STEPS"))),
    )

def load_settings(cfg_path: Path) -> Settings:
    """Read YAML (or JSON, which YAML accepts) and validate it into Settings."""
    try:
        raw = Path(cfg_path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read {cfg_path}: {e}") from None
    try:
        cfg = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse {cfg_path}: {e}") from None
    if not isinstance(cfg, dict):
        raise ConfigError(f"{cfg_path} must contain a mapping at the top level")
    return parse_settings(cfg)

def resolve_config_path(args: List[str]) -> Path:
    if args:
        return Path(args[0]).expanduser().resolve()
    o = os.environ.get("DEPLOY_WATCHER_CONFIG")
    if o:
        return Path(o).expanduser().resolve()
    return (Path.cwd() / "config.json").resolve()

def resolve_env_file(cfg_path: Optional[Path]) -> Optional[Path]:
    o = os.environ.get("DEPLOY_WATCHER_ENV_FILE")
    if o:
        return Path(o).expanduser()
    candidates = [cfg_path.parent / ".env"] if cfg_path else []
    candidates.append(Path.cwd() / ".env")
    for c in candidates:
        if c.exists():
            return c
    return None

# ---------- git helpers

CREDENTIALS_PATTERN = re.compile(r"(https?://[^:/@\s]+):[^@\s]+@")
CONFLICT_MARKERS = ("CONFLICT", "Automatic merge failed")

def remote_url(git: GitConfig) -> str:
    path = f"{git.host}/{git.repo_owner}/{git.repo_name}.git"
    if git.use_auth:
        user = urllib.parse.quote(git.username, safe="")
        token = urllib.parse.quote(git.token, safe="")
        return f"https://{user}:{token}@{path}"
    return f"https://{path}"

def redact_url(text: str) -> str:
    return CREDENTIALS_PATTERN.sub(r"\1:***@", str(text))

def current_revision(workdir: Path, runner: Runner = run) -> str:
    result = runner(["git", "rev-parse", "HEAD"], cwd=workdir, combine=False)
    if not result.ok:
        raise TrackerError(redact_url(_diagnostic(result)), stage="git rev-parse")
    marker = result.output.strip()
    if not marker:
        raise TrackerError("empty revision", stage="git rev-parse")
    return marker

def pull_latest(workdir: Path, branch: str, git: GitConfig, runner: Runner = run) -> None:
    url = remote_url(git)
    current = runner(["git", "remote", "get-url", "origin"], cwd=workdir, combine=False)
    if not current.ok or current.output.strip() != url:
        log(f"Updating origin URL in {workdir} -> {redact_url(url)}", step=True)
        result = runner(["git", "remote", "set-url", "origin", url], cwd=workdir)
        if not result.ok:
            raise TrackerError(redact_url(_diagnostic(result)), stage="git remote set-url")

    result = runner(["git", "pull", "origin", branch], cwd=workdir)
    if result.ok:
        return
    diagnostic = redact_url(_diagnostic(result))
    if any(marker in result.output for marker in CONFLICT_MARKERS):
        # leave a clean tree so the next cycle can pull again; pull.rebase leaves a rebase instead of a merge
        aborted = runner(["git", "merge", "--abort"], cwd=workdir)
        if not aborted.ok:
            aborted = runner(["git", "rebase", "--abort"], cwd=workdir)
        if not aborted.ok:
            raise MergeConflictError(
                f"merge conflict, abort failed ({aborted.output.strip()}), working copy needs manual cleanup: {diagnostic}"
            )
        raise MergeConflictError(f"merge conflict, merge aborted: {diagnostic}")
    raise TrackerError(diagnostic, stage="git pull")

# ---------- build & install

def _privileged(args: List[str], cfg: BuildConfig) -> List[str]:
    return ["sudo", *args] if cfg.sudo else list(args)

def build(workdir: Path, cfg: BuildConfig = BuildConfig(), runner: Runner = run) -> Path:
    workdir = Path(workdir)
    artifact = workdir / cfg.binary_name
    result = runner([cfg.command, "build", "-o", str(artifact), str(workdir / cfg.source_path)], cwd=workdir)
    if not result.ok:
        raise BuildError(_diagnostic(result))
    return artifact

def install(artifact: Path, service_name: str, cfg: BuildConfig = BuildConfig(), runner: Runner = run) -> Path:
    target = Path(cfg.install_dir) / service_name
    result = runner(_privileged(["cp", str(artifact), str(target)], cfg))
    if not result.ok:
        raise InstallError(_diagnostic(result))
    return target

def restart(service_name: str, cfg: BuildConfig = BuildConfig(), runner: Runner = run) -> None:
    result = runner(_privileged(["systemctl", "restart", service_name], cfg))
    if not result.ok:
        raise RestartError(_diagnostic(result))

def deploy_pipeline(env: Environment, cfg: BuildConfig = BuildConfig(), runner: Runner = run) -> Path:
    artifact = build(env.dir, cfg, runner)
    log(f"[{env.branch}] Built {artifact}")
    target = install(artifact, env.service_name, cfg, runner)
    log(f"[{env.branch}] Installed {target}")
    restart(env.service_name, cfg, runner)
    log(f"[{env.branch}] Restarted {env.service_name}")
    return target

# ---------- notifications

NOTIFY_TIMEOUT = 5
USER_AGENT = f"deploy-watcher/{__version__}"
# RFC 822 style, e.g. "02 Jan 24 15:04 UTC"
TIMESTAMP_FORMAT = "%d %b %y %H:%M %Z"

def _post_json(url: str, payload: dict, timeout: float) -> None:
    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        method="POST",
        headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            code = getattr(resp, "status", 200)
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", "ignore")
        raise NotifyFailure(f"http {e.code} {body.strip()}") from None
    except (OSError, ValueError, http.client.HTTPException) as e:
        raise NotifyFailure(f"{type(e).__name__}: {e}") from None
    if not 200 <= code < 300:
        raise NotifyFailure(f"non-2xx {code}")

def send_slack(slack: SlackConfig, message: str, timeout: float = NOTIFY_TIMEOUT, tag: str = "") -> bool:
    prefix = f"{tag} " if tag else ""
    if not slack.enabled or not slack.webhook_url:
        log(f"{prefix}Slack notifications disabled", step=True)
        return False
    try:
        _post_json(slack.webhook_url, {"text": message}, timeout)
    except NotifyFailure as e:
        log(f"{prefix}Slack post failed: {e}")
        return False
    log(f"{prefix}Sent Slack notification", step=True)
    return True

def success_message(branch: str, when: datetime) -> str:
    return f":rocket: [{branch}] Deploy successful at {when.strftime(TIMESTAMP_FORMAT)}"

def failure_message(branch: str, reason: str) -> str:
    return f":x: [{branch}] Deploy error: {reason}"

# ---------- reconcile

NO_CHANGE = "no_change"
DEPLOYED = "deployed"
FAILED = "failed"

class DeployOutcome(NamedTuple):
    status: str
    branch: str
    reason: str = ""
    before: str = ""
    after: str = ""

    @classmethod
    def no_change(cls, branch: str, revision: str) -> "DeployOutcome":
        return cls(NO_CHANGE, branch, before=revision, after=revision)

    @classmethod
    def deployed(cls, branch: str, before: str, after: str) -> "DeployOutcome":
        return cls(DEPLOYED, branch, before=before, after=after)

    @classmethod
    def failed(cls, branch: str, reason: str, before: str = "", after: str = "") -> "DeployOutcome":
        return cls(FAILED, branch, reason=reason, before=before, after=after)

Notify = Callable[[str], object]

def _local_now() -> datetime:
    return datetime.now().astimezone()

def reconcile(
    env: Environment,
    settings: Settings,
    runner: Runner = run,
    notify: Optional[Notify] = None,
    clock: Callable[[], datetime] = _local_now,
) -> DeployOutcome:
    """
    One check-and-deploy attempt for a single environment.

    read HEAD → pull → read HEAD; equal hashes end the attempt quietly.
    Otherwise build → install → restart. Every DeployError becomes one log
    line and one failure notification; none escape.
    """
    tag = f"[{env.branch}]"
    if notify is None:
        notify = lambda message: send_slack(settings.slack, message, tag=tag)
    before = after = ""

    log(f"{tag} Checking for updates...")
    context = "could not get last commit hash"
    try:
        before = current_revision(env.dir, runner)
        context = None
        pull_latest(env.dir, env.branch, settings.git, runner)
        context = "could not get new commit hash"
        after = current_revision(env.dir, runner)
        context = None

        if before == after:
            log(f"{tag} No new changes.")
            return DeployOutcome.no_change(env.branch, after)

        log(f"{tag} New commit detected ({before[:7]} -> {after[:7]}). Building...")
        deploy_pipeline(env, settings.build, runner)
    except DeployError as e:
        reason = f"{context}: {e}" if context else str(e)
        log(f"{tag} Error: {reason}")
        notify(failure_message(env.branch, reason))
        return DeployOutcome.failed(env.branch, reason, before, after)

    log(f"{tag} Deploy completed successfully.")
    notify(success_message(env.branch, clock()))
    return DeployOutcome.deployed(env.branch, before, after)

# ---------- scheduling

class Ticker:
    """Fixed pause between cycles; `sleep` is swappable so tests never block."""

    def __init__(self, interval: float, sleep: Callable[[float], None] = time.sleep):
        self.interval = interval
        self.ticks = 0
        self._sleep = sleep

    def wait(self) -> None:
        log(f"Sleeping {self.interval}s", step=True)
        self._sleep(self.interval)
        self.ticks += 1

def run_cycle(
    settings: Settings,
    reconcile_fn: Optional[Callable[[Environment], DeployOutcome]] = None,
    notify: Optional[Notify] = None,
) -> List[DeployOutcome]:
    if reconcile_fn is None:
        reconcile_fn = lambda env: reconcile(env, settings, notify=notify)

    outcomes: List[DeployOutcome] = []
    for env in settings.environments:
        try:
            outcomes.append(reconcile_fn(env))
        except Exception as e:
            tb = traceback.format_exc()
            reason = f"unexpected error: {e}"
            log(f"[{env.branch}] Error: {reason}\n{tb}")
            if notify is None:
                send_slack(settings.slack, failure_message(env.branch, reason), tag=f"[{env.branch}]")
            else:
                notify(failure_message(env.branch, reason))
            outcomes.append(DeployOutcome.failed(env.branch, reason))
    return outcomes

def run_forever(
    settings: Settings,
    reconcile_fn: Optional[Callable[[Environment], DeployOutcome]] = None,
    ticker: Optional[Ticker] = None,
    max_cycles: Optional[int] = None,
    notify: Optional[Notify] = None,
) -> int:
    ticker = ticker or Ticker(settings.interval_seconds)
    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        run_cycle(settings, reconcile_fn, notify)
        cycles += 1
        ticker.wait()
    return cycles

# ---------- main

def main(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    once = "--once" in args
    args = [a for a in args if a != "--once"]

    cfg_path = resolve_config_path(args)
    env_file = resolve_env_file(cfg_path)
    if env_file:
        load_dotenv(dotenv_path=str(env_file))

    try:
        settings = load_settings(cfg_path)
    except ConfigError as e:
        raise SystemExit(f"FATAL: config load error: {e}")

    global LOG_STEPS
    LOG_STEPS = settings.log_steps

    if settings.log_file:
        try:
            open_log_sink(settings.log_file)
        except OSError as e:
            raise SystemExit(f"FATAL: log file error: {e}")

    try:
        banner = [
            "=== deploy watcher starting ===",
            f" host:        {host()}",
            f" env file:    {env_file or '<none>'}",
            f" config path: {cfg_path}",
            f" remote:      {redact_url(remote_url(settings.git))}",
            f" interval:    {settings.interval_seconds}s",
            f" log steps:   {LOG_STEPS}",
            " environments:",
        ]
        banner += [f"  - {e.branch}  dir={e.dir}  service={e.service_name}" for e in settings.environments]
        for line in banner:
            log(line)

        if once:
            run_cycle(settings)
        else:
            run_forever(settings)
    finally:
        close_log_sink()
    return 0

if __name__ == "__main__":
    sys.exit(main())
