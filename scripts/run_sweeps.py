import logging

from src.application.sweep_service import SweepService
from src.infrastructure.db.session import get_db_session


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    with get_db_session() as db:
        report = SweepService(db).run()
    print(
        "Sweep complete: "
        f"{report.expired_requests} requests expired, "
        f"{report.expired_items} booking items expired, "
        f"{report.released_payouts} payouts released, "
        f"{report.deferred_payouts} payouts deferred."
    )


if __name__ == "__main__":
    main()
