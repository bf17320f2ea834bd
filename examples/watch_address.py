import argparse
import asyncio

from colorama import Fore, Style

from darkgateway import GatewayClient, GatewayConfig, run_with_keyboard_interrupt, setup_logging


class Const:
    CONFIG_FILE = "examples/config.yaml"
    LOG_FILE = "watch.log"
    # Gateways drop subscriptions that aren't renewed
    RENEW_INTERVAL = 120


class AddressWatcher(GatewayClient):
    """Prints the history of some addresses, then every update pushed for them"""

    def on_open(self):
        self.logger.info("Gateway ready")

    def on_close(self, reason):
        self.logger.info(f"Gateway closed: {reason}")

    def on_unroutable(self, error):
        self.logger.debug(f"Ignored frame for {error.key}")

    def print_history(self, address: str):
        def handle(error, history):
            if error:
                self.logger.error(f"History of {address} failed: {error}")
                return
            print(Fore.GREEN + f"{address}: {len(history or [])} history rows" + Style.RESET_ALL)
        self.fetch_history(address, handle)

    def print_update(self, update: dict):
        print(Fore.YELLOW + f"UPDATE {update['address']}: {update}" + Style.RESET_ALL)

    def acknowledge(self, address: str):
        def handle(error, result):
            if error:
                self.logger.error(f"Subscription to {address} failed: {error}")
            else:
                self.logger.info(f"Subscribed to {address}")
        return handle

    async def renew_forever(self, addresses: list[str]):
        while self.is_connected():
            await asyncio.sleep(Const.RENEW_INTERVAL)
            for address in addresses:
                self.renew(address, self.acknowledge(address))


async def main():
    parser = argparse.ArgumentParser(description="Watch addresses on a darkwallet gateway")
    parser.add_argument("addresses", nargs="+")
    parser.add_argument("--config", default=Const.CONFIG_FILE)
    args = parser.parse_args()

    config = GatewayConfig.load(args.config)
    logger = setup_logging(config.log_level, Const.LOG_FILE)

    gw = await AddressWatcher.from_config(config, logger=logger)
    async with gw:
        height = await gw.call("fetch_last_height")
        logger.info(f"Chain height is {height}")
        for address in args.addresses:
            gw.print_history(address)
            gw.subscribe(address, gw.acknowledge(address), gw.print_update)
        renewer = asyncio.create_task(gw.renew_forever(args.addresses))
        try:
            await gw.wait_closed()
        finally:
            renewer.cancel()


if __name__ == "__main__":
    run_with_keyboard_interrupt(main)
