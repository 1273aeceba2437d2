"""Seccomp profiles for sandbox containers.

`runtime-default` delegates to the container runtime's built-in filter.
`strict` is an allowlist sized for interpreters running short scripts; anything
not listed fails with EPERM.
"""

import json
from pathlib import Path
from typing import Any

RUNTIME_DEFAULT = "runtime-default"
STRICT = "strict"

_ALLOW = "SCMP_ACT_ALLOW"

_STRICT_SYSCALLS: tuple[tuple[str, ...], ...] = (
    ("exit", "exit_group"),
    ("read", "write", "readv", "writev", "close", "close_range"),
    ("fstat", "stat", "lstat", "newfstatat", "statx", "statfs", "fstatfs"),
    ("lseek", "pread64", "pwrite64"),
    ("mmap", "mprotect", "munmap", "mremap", "madvise", "brk"),
    ("rt_sigaction", "rt_sigprocmask", "rt_sigreturn", "sigaltstack"),
    ("ioctl",),
    ("access", "faccessat", "faccessat2"),
    ("open", "openat"),
    ("getdents", "getdents64"),
    ("fcntl", "dup", "dup2", "dup3"),
    ("getcwd", "chdir"),
    ("readlink", "readlinkat"),
    ("getpid", "getppid", "gettid", "getpgrp", "getpgid", "setpgid", "getsid"),
    ("getuid", "getgid", "geteuid", "getegid", "getgroups"),
    ("uname", "sysinfo"),
    ("clock_gettime", "clock_getres", "gettimeofday", "time"),
    ("nanosleep", "clock_nanosleep"),
    ("futex", "set_tid_address", "set_robust_list", "get_robust_list"),
    ("getrandom",),
    ("prlimit64", "getrlimit"),
    ("arch_prctl", "prctl"),
    ("pipe", "pipe2"),
    ("poll", "ppoll", "select", "pselect6"),
    ("epoll_create", "epoll_create1", "epoll_ctl", "epoll_wait", "epoll_pwait"),
    ("eventfd", "eventfd2"),
    ("wait4", "waitid"),
    ("clone", "clone3", "fork", "vfork"),
    ("execve", "execveat"),
    ("kill", "tgkill"),
    ("sched_yield", "sched_getaffinity"),
    ("rseq", "membarrier"),
    ("memfd_create",),
    ("fadvise64",),
    ("unlink", "unlinkat", "rename", "renameat", "renameat2"),
    ("mkdir", "mkdirat", "rmdir"),
    ("ftruncate", "fsync", "fdatasync"),
    ("umask", "fchmod", "chmod"),
    ("socket", "connect", "sendto", "recvfrom", "sendmsg", "recvmsg", "shutdown"),
    ("getsockopt", "setsockopt", "getsockname", "getpeername"),
)


def strict_profile() -> dict[str, Any]:
    return {
        "defaultAction": "SCMP_ACT_ERRNO",
        "architectures": ["SCMP_ARCH_X86_64", "SCMP_ARCH_X86", "SCMP_ARCH_AARCH64"],
        "syscalls": [{"names": list(names), "action": _ALLOW} for names in _STRICT_SYSCALLS],
    }


def resolve_profile(name: str) -> str | None:
    """Resolves a profile name to the JSON document handed to the runtime.

    Returns:
        None for `runtime-default`, otherwise the serialized profile.

    Raises:
        ValueError: Unknown name, unreadable file or invalid JSON.
    """
    if name == RUNTIME_DEFAULT:
        return None
    if name == STRICT:
        return json.dumps(strict_profile())

    path = Path(name)
    if not path.is_file():
        raise ValueError(f"Unknown seccomp profile: {name}")
    try:
        profile = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Unreadable seccomp profile {name}: {e}") from e
    if "defaultAction" not in profile:
        raise ValueError(f"Seccomp profile {name} has no defaultAction")
    return json.dumps(profile)
