import sys

from invoke import run, task


@task
def test(ctx, all=False):
    test_cmd = [
        "pytest",  # Test command
        "--cov-report term-missing",  # Print only uncovered lines to stdout
        "--cov multipart_stream",  # Test only this package
        "--timeout=30",  # Each test should timeout after 30 sec
    ]

    # Test in this directory
    test_cmd.append("tests")

    res = run(" ".join(test_cmd), pty=False, warn=True)
    if not res.ok:
        print("Tests failed!", file=sys.stderr)
        sys.exit(res.exited)


@task
def fuzz(ctx, target="reader", runs=100000):
    """Run one of the atheris harnesses under fuzz/."""
    run(f"python fuzz/fuzz_{target}.py -runs={runs}", pty=False)
