import asyncio
import base64

from rxjunglebus import (
    JungleBusSubscription,
    LocalTransport,
    StreamKind,
    configure_telemetry,
)
from rxjunglebus.telemetry import ConsoleLogRecordExporter

# this example drives a subscription end to end over the in-memory transport:
# the "server" side publishes control and data messages, the subscription
# decodes them, pauses the producer when the consumer lags and resumes it later.


def main():
    async def run():
        logger_provider = configure_telemetry(
            service_name="local-example",
            log_exporter=ConsoleLogRecordExporter(),
            batch_logs=False,
        )
        transport = LocalTransport(logger_provider=logger_provider)
        transport.connect()

        async def on_publish(tx):
            await asyncio.sleep(0.05)  # a slow consumer
            print(f"tx {tx.id} @ {tx.block_height}: {tx.transaction}")

        sub = JungleBusSubscription(
            transport,
            "demo",
            from_block=1000,
            on_publish=on_publish,
            on_status=lambda msg: print(f"status {msg.status_code} {msg.status} block={msg.block}"),
            on_error=lambda ctx: print(f"error {ctx.type}: {ctx.message}"),
            max_queue_size=10,
            recheck_interval=0.5,
            logger_provider=logger_provider,
        ).subscribe()

        data = "query:demo:1000"
        for i in range(30):
            body = base64.b64encode(i.to_bytes(2, "big")).decode()
            transport.publish(data, {"id": f"tx{i}", "block_height": 1000, "transaction": body})
        transport.publish("query:demo:control", {"statusCode": 200, "status": "block done", "block": 1000})

        # the connection drops; the data channel comes back at the live cursor
        transport.publish("query:demo:control", {"statusCode": 200, "status": "block done", "block": 1001})
        transport.drop_connection("example")
        transport.connect()

        await sub.queue(StreamKind.DATA).join()
        print("commands sent:", transport.commands(data))
        print("data channel now:", sub.handle(StreamKind.DATA).channel)
        await sub.close()

    try:
        asyncio.run(run())

    except KeyboardInterrupt:
        print("\nKeyboard Interrupt.")


if __name__ == "__main__":
    main()
