# The same release pipeline as release.yml, written with the Python DSL.
#
#   shipline run --workflow examples/release_workflow.py --tag v1.2.3 --secrets secrets.yml

from shipline import build, filters, job, only, regex, release_only, wf

IMAGE = "web3f/polkadot-registrar-challenger"


def workflow():
    return wf(
        job(
            "buildImage",
            ["/scripts/build-image.sh", IMAGE, "."],
            contexts="dockerhub-bot",
            filters=filters(tags=only(regex(".*"))),
        ),
        job(
            "publishImage",
            ["/scripts/publish-image.sh", IMAGE],
            requires=["buildImage"],
            contexts="dockerhub-bot",
            filters=release_only(),
        ),
        job(
            "publishChart",
            "/scripts/publish-chart.sh",
            requires=["buildImage"],
            contexts="github-bot",
            filters=release_only(),
        ),
        build("deploy")
        .run("/scripts/deploy.sh -c engineering")
        .depends_on("publishImage", "publishChart")
        .with_contexts("engineering-access-registrar", "registrar-test")
        .with_env(GCP_REGION="europe-west3", HELM_ENV="production")
        .with_filters(release_only())
        .with_timeout(30 * 60)
        .build(),
    )
