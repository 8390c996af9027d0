from __future__ import annotations

import logging

from socialauth.worker.runner import MaintenanceConfig, run_maintenance_forever


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    run_maintenance_forever(MaintenanceConfig.from_settings())


if __name__ == "__main__":
    main()
