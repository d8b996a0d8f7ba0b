# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
The build graph and the scheduler running it.
"""
from __future__ import annotations

import logging
import multiprocessing
import os
import sys
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    MutableMapping,
    Optional,
    Sequence,
)

from ..common import ConfigurationError, FatlibsException, StageError, WorkDirs
from ..registry import Registry
from ..targets import Expansion, download_step
from .download import Download
from .driver import RAN, TargetDriver
from .merge import Merger
from .package import Packager
from .ui import print_ui

log = logging.getLogger(__name__)

OK = "ok"
FAILED = "failed"
SKIPPED = "skipped"


class StepResult:
    """
    The outcome of one step.

    :param name: The step name
    :type name: str
    :param product: The product the step belongs to
    :type product: str
    :param status: ``ok``, ``failed`` or ``skipped``
    :type status: str
    :param summary: The state of every stage the step ran (``ran`` or ``fresh``)
    :type summary: dict
    :param error: The failure message, or the reason the step was skipped
    :type error: str
    :param context: Where the failure happened (product, OS, SDK, arch, stage, log)
    :type context: dict
    """

    def __init__(
        self,
        name: str,
        product: str = "",
        status: str = OK,
        summary: Optional[Dict[str, str]] = None,
        error: str = "",
        context: Optional[Dict[str, str]] = None,
    ) -> None:
        self.name = name
        self.product = product
        self.status = status
        self.summary = dict(summary or {})
        self.error = error
        self.context = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "product": self.product,
            "status": self.status,
            "summary": self.summary,
            "error": self.error,
            "context": self.context,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        return cls(**data)

    def __repr__(self) -> str:
        return f"StepResult({self.name!r}, {self.status!r})"


class BuildReport:
    """
    The results of a build, in the order steps were scheduled.
    """

    def __init__(self, results: Iterable[StepResult]) -> None:
        self.results: Dict[str, StepResult] = {_.name: _ for _ in results}

    def __getitem__(self, name: str) -> StepResult:
        return self.results[name]

    @property
    def ok(self) -> bool:
        return all(_.status == OK for _ in self.results.values())

    @property
    def failures(self) -> List[StepResult]:
        return [_ for _ in self.results.values() if _.status == FAILED]

    @property
    def skipped(self) -> List[StepResult]:
        return [_ for _ in self.results.values() if _.status == SKIPPED]

    @property
    def ran(self) -> List[str]:
        """The steps that did any work."""
        return [
            _.name for _ in self.results.values() if RAN in _.summary.values()
        ]

    @property
    def products(self) -> Dict[str, str]:
        """
        Every product mapped to ``succeeded`` or ``failed``.
        """
        products: Dict[str, str] = {}
        for result in self.results.values():
            if not result.product:
                continue
            if result.status != OK:
                products[result.product] = "failed"
            else:
                products.setdefault(result.product, "succeeded")
        return products

    def format(self) -> str:
        lines = []
        for product, status in self.products.items():
            lines.append(f"{product}: {status}")
        if self.failures:
            lines.append("")
            lines.append("The following failures were reported")
            for result in self.failures:
                lines.append(f"{result.name}: {result.error}")
        if self.skipped:
            lines.append("")
            lines.append("The following steps were skipped")
            for result in self.skipped:
                lines.append(f"{result.name}: {result.error}")
        return "\n".join(lines)


class Step:
    """
    One node of the build graph.
    """

    def __init__(
        self,
        name: str,
        func: Callable[..., Any],
        wait_on: Sequence[str] = (),
        product: str = "",
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.name = name
        self.func = func
        self.wait_on = list(wait_on)
        self.product = product
        self.kwargs = dict(kwargs or {})

    def __repr__(self) -> str:
        return f"Step({self.name!r}, wait_on={self.wait_on!r})"


def _summary(name: str, result: Any) -> Dict[str, str]:
    if isinstance(result, dict):
        return {str(k): str(v) for k, v in result.items()}
    if result is None:
        return {}
    return {name.split("-", 1)[0]: str(result)}


class Builder:
    """
    Runs a graph of build steps.

    Every step runs in its own process once all the steps it waits on have
    succeeded, with at most ``jobs`` steps running at a time. A failed step
    marks everything depending on it as skipped, every other step keeps
    running.

    :param dirs: The working directories
    :type dirs: ``fatlibs.common.WorkDirs``
    :param jobs: The number of steps run in parallel, defaults to the cpu count
    :type jobs: int, optional
    :param processes: Run steps in child processes, when false steps run one
        after the other in this process
    :type processes: bool
    """

    def __init__(
        self,
        dirs: WorkDirs,
        jobs: Optional[int] = None,
        processes: bool = True,
    ) -> None:
        self.dirs = dirs
        self.jobs = max(jobs or multiprocessing.cpu_count(), 1)
        self.processes = processes
        self.steps: Dict[str, Step] = {}

    def add(
        self,
        name: str,
        func: Callable[..., Any],
        wait_on: Optional[Sequence[str]] = None,
        product: str = "",
        **kwargs: Any,
    ) -> Step:
        """
        Add a step to the graph.

        :param name: The name of the step
        :type name: str
        :param func: The callable run by the step, called with ``kwargs``
        :type func: callable
        :param wait_on: The steps that have to succeed first
        :type wait_on: list, optional
        :param product: The product reported for this step
        :type product: str

        :raises ConfigurationError: When the step already exists
        """
        if name in self.steps:
            raise ConfigurationError(f"Duplicate step {name!r}")
        step = Step(name, func, wait_on or [], product, kwargs)
        self.steps[name] = step
        return step

    def order(self, names: Optional[Sequence[str]] = None) -> List[str]:
        """
        Return steps in dependency order.

        :param names: The steps to order, defaults to every step
        :type names: list, optional

        :raises ConfigurationError: When a step is unknown, waits on an unknown
            step or the graph has a cycle
        """
        if names is None:
            names = list(self.steps)
        ordered: List[str] = []
        visiting: List[str] = []

        def visit(name: str) -> None:
            if name in ordered:
                return
            if name in visiting:
                cycle = visiting[visiting.index(name) :] + [name]
                raise ConfigurationError(
                    "Dependency cycle: {}".format(" -> ".join(cycle))
                )
            if name not in self.steps:
                raise ConfigurationError(f"Unknown step {name!r}")
            visiting.append(name)
            for dependency in self.steps[name].wait_on:
                visit(dependency)
            visiting.pop()
            ordered.append(name)

        for name in names:
            visit(name)
        return ordered

    def closure(self, names: Sequence[str]) -> List[str]:
        """
        The given steps along with every step they depend on, in dependency order.
        """
        return self.order(names)

    def run_step(
        self,
        name: str,
        results: MutableMapping[str, Dict[str, Any]],
        log_level: Optional[str] = None,
    ) -> None:
        """
        Run a step and store its result.

        :param name: The name of the step to run
        :type name: str
        :param results: Where to store the step's result
        :type results: dict
        :param log_level: Set up logging at this level when the process has
            no log handlers
        :type log_level: str, optional
        """
        root_log = logging.getLogger(None)
        if log_level is not None and not root_log.handlers:
            os.makedirs(self.dirs.logs, exist_ok=True)
            handler = logging.FileHandler(self.dirs.logs / "build.log")
            handler.setLevel(logging.INFO)
            handler.setFormatter(logging.Formatter(f"%(asctime)s {name} %(message)s"))
            root_log.addHandler(handler)
            root_log.setLevel(logging.NOTSET)
        step = self.steps[name]
        result = StepResult(name, step.product)
        try:
            result.summary = _summary(name, step.func(**step.kwargs))
        except StageError as exc:
            log.error("Step %s has failed: %s", name, exc)
            result.status = FAILED
            result.error = str(exc)
            result.context = exc.context
        except FatlibsException as exc:
            log.error("Step %s has failed: %s", name, exc)
            result.status = FAILED
            result.error = str(exc)
        except Exception as exc:
            log.exception("Step %s has failed", name)
            result.status = FAILED
            result.error = f"{exc.__class__.__name__}: {exc}"
        results[name] = result.to_dict()

    def _child(
        self,
        name: str,
        results: MutableMapping[str, Dict[str, Any]],
        log_level: Optional[str],
    ) -> None:
        self.run_step(name, results, log_level)
        if results[name]["status"] != OK:
            sys.exit(1)

    def build(
        self,
        steps: Optional[Sequence[str]] = None,
        ignore_dependencies: bool = False,
        show_ui: bool = False,
        log_level: str = "WARNING",
    ) -> BuildReport:
        """
        Build!

        :param steps: The steps to run along with their dependencies, defaults to every step
        :type steps: list, optional
        :param ignore_dependencies: Run only the given steps, without their dependencies
        :type ignore_dependencies: bool, optional
        :param show_ui: Show the progress line
        :type show_ui: bool, optional

        :return: The result of every scheduled step
        :rtype: ``BuildReport``
        """
        if steps is None:
            names = self.order()
        elif ignore_dependencies:
            for name in steps:
                if name not in self.steps:
                    raise ConfigurationError(f"Unknown step {name!r}")
            names = [_ for _ in self.order() if _ in steps]
        else:
            names = self.closure(steps)
        waits = {
            name: [_ for _ in self.steps[name].wait_on if _ in names]
            for name in names
        }
        log.info("Starting builds: %s", " ".join(names))
        if self.processes:
            results = self._run_processes(names, waits, show_ui, log_level)
        else:
            results = self._run_inline(names, waits)
        return BuildReport(
            StepResult.from_dict(results[_]) for _ in names if _ in results
        )

    def _skip(
        self,
        name: str,
        waits: Dict[str, List[str]],
        results: MutableMapping[str, Dict[str, Any]],
    ) -> bool:
        blocked = [
            _ for _ in waits[name] if _ in results and results[_]["status"] != OK
        ]
        if not blocked:
            return False
        log.warning("Skipping %s, %s did not succeed", name, ", ".join(blocked))
        results[name] = StepResult(
            name,
            self.steps[name].product,
            SKIPPED,
            error="{} did not succeed".format(", ".join(blocked)),
        ).to_dict()
        return True

    def _run_inline(
        self, names: Sequence[str], waits: Dict[str, List[str]]
    ) -> Dict[str, Dict[str, Any]]:
        results: Dict[str, Dict[str, Any]] = {}
        for name in names:
            if self._skip(name, waits, results):
                continue
            self.run_step(name, results)
        return results

    def _run_processes(
        self,
        names: Sequence[str],
        waits: Dict[str, List[str]],
        show_ui: bool,
        log_level: str,
    ) -> Dict[str, Dict[str, Any]]:
        manager = multiprocessing.Manager()
        shared: MutableMapping[str, Dict[str, Any]] = manager.dict()
        results: Dict[str, Dict[str, Any]] = {}
        pending = list(names)
        processes: Dict[str, multiprocessing.Process] = {}
        states: Dict[str, str] = {}

        if show_ui:
            sys.stdout.write("Starting builds\n")
        try:
            while pending or processes:
                for name in list(pending):
                    if self._skip(name, waits, results):
                        pending.remove(name)
                        states[name] = SKIPPED
                for name in list(pending):
                    if len(processes) >= self.jobs:
                        break
                    if not all(_ in results for _ in waits[name]):
                        continue
                    pending.remove(name)
                    proc = multiprocessing.Process(
                        name=name,
                        target=self._child,
                        args=(name, shared, log_level),
                    )
                    proc.start()
                    processes[name] = proc
                for proc in list(processes.values()):
                    proc.join(0.3)
                    if show_ui:
                        print_ui(names, processes, states)
                    if proc.exitcode is None:
                        continue
                    processes.pop(proc.name)
                    if proc.name in shared:
                        results[proc.name] = dict(shared[proc.name])
                    else:
                        results[proc.name] = StepResult(
                            proc.name,
                            self.steps[proc.name].product,
                            FAILED,
                            error=f"Step process exited with code {proc.exitcode}",
                        ).to_dict()
                    states[proc.name] = results[proc.name]["status"]
        except KeyboardInterrupt:
            for proc in processes.values():
                proc.terminate()
            for proc in processes.values():
                proc.join()
            raise
        finally:
            manager.shutdown()
        if show_ui:
            print_ui(names, processes, states)
            sys.stdout.write("\n")
            sys.stdout.flush()
        return results


def plan(
    registry: Registry,
    dirs: WorkDirs,
    expansion: Expansion,
    force_download: bool = False,
    environ: Optional[MutableMapping[str, str]] = None,
    jobs: Optional[int] = None,
    processes: bool = True,
) -> Builder:
    """
    Create the build graph of an expansion.

    One download step per product, one build step per target waiting on the
    download, one merge step per SDK group waiting on every build step of
    the group and one package step waiting on the merge.

    :param registry: The registry, for the build number
    :type registry: ``fatlibs.registry.Registry``
    :param dirs: The working directories
    :type dirs: ``fatlibs.common.WorkDirs``
    :param expansion: The expanded targets
    :type expansion: ``fatlibs.targets.Expansion``
    :param force_download: Download source archives even when present
    :type force_download: bool

    :return: The builder holding the graph
    :rtype: ``Builder``
    """
    builder = Builder(dirs, jobs=jobs, processes=processes)
    for product in expansion.products:
        builder.add(
            download_step(product),
            Download.from_product(product, dirs.downloads),
            product=product.name,
            force_download=force_download,
        )
    for target in expansion.targets:
        builder.add(
            target.step,
            TargetDriver(target, environ=environ),
            wait_on=[download_step(target.product)],
            product=target.product.name,
        )
    for group in expansion.groups.values():
        builder.add(
            group.merge_step,
            Merger(group, environ=environ),
            wait_on=[_.step for _ in group.targets],
            product=group.product.name,
        )
        builder.add(
            group.package_step,
            Packager(group, registry.build_number),
            wait_on=[group.merge_step],
            product=group.product.name,
        )
    return builder
