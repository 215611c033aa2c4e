#!/usr/bin/env python3
"""
Process supervisor
==================

Runs the API and the queue workers as child processes of one container,
prefixes their output, restarts crashed children with a backoff, and
forwards SIGTERM/SIGINT.

Usage:
    python run_workers.py                    # API + one of each worker
    python run_workers.py --only api         # API only
    python run_workers.py --only classify    # Classification workers only
    python run_workers.py --workers 3        # 3 autolink and 3 classify workers
    python run_workers.py --no-api           # Workers only

Children:
    api        uvicorn main:app
    autolink   workers.auto_link_worker       (queue:autolink)
    classify   workers.classification_worker  (queue:classify)
    apportion  workers.apportionment_worker   (queue:apportion, always one)
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

BACKEND_DIR = Path(__file__).parent
load_dotenv(BACKEND_DIR.parent / '.env')

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
)
log = logging.getLogger('supervisor')

WORKER_MODULES = {
    'autolink': 'workers.auto_link_worker',
    'classify': 'workers.classification_worker',
    'apportion': 'workers.apportionment_worker',
}

# ApportionmentService locks per project inside one process only
SINGLETON_WORKERS = {'apportion'}

MAX_RESTART_DELAY = 60


@dataclass
class ProcessConfig:
    name: str
    argv: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    restarts: int = 0


def build_configs(only: Optional[str], workers: int, no_api: bool, port: int) -> List[ProcessConfig]:
    configs = []

    if not no_api and only in (None, 'all', 'api'):
        configs.append(ProcessConfig(
            name='api',
            argv=[sys.executable, '-m', 'uvicorn', 'main:app', '--host', '0.0.0.0', '--port', str(port)],
        ))

    for kind, module in WORKER_MODULES.items():
        if only not in (None, 'all', kind):
            continue
        count = 1 if kind in SINGLETON_WORKERS else max(1, workers)
        for i in range(1, count + 1):
            name = f'{kind}-{i}'
            configs.append(ProcessConfig(name=name, argv=[sys.executable, '-m', module], env={'WORKER_NAME': name}))

    return configs


class Supervisor:
    """Keeps every ProcessConfig running until asked to stop."""

    def __init__(self, configs: List[ProcessConfig]):
        self.configs = configs
        self.children: Dict[str, asyncio.subprocess.Process] = {}
        self.stopping = asyncio.Event()

    async def _spawn(self, config: ProcessConfig) -> asyncio.subprocess.Process:
        proc = await asyncio.create_subprocess_exec(
            *config.argv,
            cwd=str(BACKEND_DIR),
            env={**os.environ, **config.env},
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        self.children[config.name] = proc
        log.info(f"Started {config.name} (PID {proc.pid})")
        return proc

    async def _pipe_output(self, name: str, proc: asyncio.subprocess.Process):
        async for raw in proc.stdout:
            sys.stdout.write(f"[{name}] {raw.decode(errors='replace')}")
            sys.stdout.flush()

    async def _keep_alive(self, config: ProcessConfig):
        while not self.stopping.is_set():
            try:
                proc = await self._spawn(config)
            except OSError as e:
                log.error(f"Could not start {config.name}: {e}")
                return

            await self._pipe_output(config.name, proc)
            code = await proc.wait()
            if self.stopping.is_set():
                return

            config.restarts += 1
            delay = min(MAX_RESTART_DELAY, 2 ** min(config.restarts, 6))
            log.warning(f"{config.name} exited with code {code}; restart #{config.restarts} in {delay}s")
            try:
                await asyncio.wait_for(self.stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def _terminate_all(self):
        for name, proc in self.children.items():
            if proc.returncode is None:
                log.info(f"Stopping {name} (PID {proc.pid})")
                proc.terminate()

        for name, proc in self.children.items():
            try:
                await asyncio.wait_for(proc.wait(), timeout=10)
            except asyncio.TimeoutError:
                log.warning(f"Killing {name}")
                proc.kill()

    async def run(self):
        if not self.configs:
            log.error("Nothing to run")
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.stopping.set)

        log.info(f"Supervising {len(self.configs)} process(es): {', '.join(s.name for s in self.configs)}")
        keepers = [asyncio.create_task(self._keep_alive(config)) for config in self.configs]

        await self.stopping.wait()
        log.info("Shutting down...")
        await self._terminate_all()
        await asyncio.gather(*keepers, return_exceptions=True)
        log.info("All processes stopped")


def main():
    parser = argparse.ArgumentParser(description='Run the API and queue workers')
    parser.add_argument('--only', choices=['api', *WORKER_MODULES, 'all'],
                        help='Run a single process type')
    parser.add_argument('--workers', type=int, default=1,
                        help='Instances of each scalable worker (autolink, classify)')
    parser.add_argument('--no-api', action='store_true',
                        help='Skip the API server')
    parser.add_argument('--port', type=int, default=int(os.getenv('PORT', '8000')))
    args = parser.parse_args()

    configs = build_configs(args.only, args.workers, args.no_api, args.port)
    asyncio.run(Supervisor(configs).run())


if __name__ == '__main__':
    main()
