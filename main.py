import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from datetime import timedelta

from kube_runner.cluster import get_cluster
from kube_runner.errors import ClusterApiError, ExecutionError
from kube_runner.logging_config import configure_logging
from kube_runner.models import JobSpec
from kube_runner.naming import new_execution_id
from kube_runner.runner import KubeRunner
from kube_runner.settings import get_settings

logger = logging.getLogger("kube_runner.main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run commands in a throwaway pod.")
    parser.add_argument("--kubeconfig", help="path to the kubeconfig file")
    parser.add_argument("--namespace", help="run every pod in this namespace")
    sub = parser.add_subparsers(dest="action", required=True)

    run = sub.add_parser("run", help="run commands and print their output")
    run.add_argument("--image", required=True)
    run.add_argument("-c", "--command", dest="commands", action="append", default=[])
    run.add_argument("--id", dest="execution_id", help="execution id (default: timestamp)")
    run.add_argument("--timeout", type=float, help="seconds before the pod is killed")

    delete = sub.add_parser("delete", help="delete a pod left behind by a run")
    delete.add_argument("namespace")
    delete.add_argument("name")

    sweep = sub.add_parser("sweep", help="delete managed pods older than --age")
    sweep.add_argument("--age", type=float, default=3600, help="age in seconds")
    return parser


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    if args.kubeconfig:
        settings = replace(settings, kubeconfig=args.kubeconfig)
    if args.namespace:
        settings = replace(settings, namespace=args.namespace)
    configure_logging(settings.log_level)

    try:
        runner = KubeRunner(get_cluster(settings), settings)
        if args.action == "run":
            request = JobSpec(image=args.image, commands=args.commands)
            execution_id = args.execution_id or new_execution_id("ci")
            result = await runner.run_job(request, execution_id, timeout_sec=args.timeout)
            sys.stdout.write(result.output)
            return 0 if result.status == "succeeded" else result.exit_code or 1
        if args.action == "delete":
            await runner.delete_object(args.namespace, args.name)
            return 0
        swept = await runner.reaper.sweep(timedelta(seconds=args.age))
        for pod in swept:
            print(f"{pod.namespace}/{pod.name}")
        return 0
    except ExecutionError as exc:
        logger.error("%s: %s", exc.kind, exc)
        return 2
    except ClusterApiError as exc:
        logger.error("cluster unavailable: %s", exc)
        return 2


def main() -> None:
    args = build_parser().parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
