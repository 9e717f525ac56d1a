"""Main entry point for room fan control."""

import os
import signal
import sys
import logging
import threading

from ha import HomeAssistantAPI, HomeAssistantFanActuator
from config import load_config
from controller import ActuatorWorker, RoomController, RoomWorker
from dispatcher import Dispatcher
from messaging import MqttMessaging
from sensors import SensorBridge


def setup_logging():
    """Configure logging based on environment.

    Always outputs to stdout. Additionally sends to OpenTelemetry/Dash0
    if OTEL_EXPORTER_OTLP_ENDPOINT is configured.

    Returns:
        LoggerProvider if using OpenTelemetry, None otherwise
    """
    # Always configure stdout logging
    stdout_handler = logging.StreamHandler()
    stdout_handler.setFormatter(
        logging.Formatter(fmt="%(asctime)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )

    handlers = [stdout_handler]

    # Additionally send to OpenTelemetry/Dash0 if configured
    otel_endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    logger_provider = None

    if otel_endpoint:
        from opentelemetry import _logs
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.sdk.resources import Resource

        resource = Resource.create(
            {
                "service.name": "room-fan-controller",
                "service.namespace": "homeassistant",
            }
        )

        logger_provider = LoggerProvider(resource=resource)
        logger_provider.add_log_record_processor(
            BatchLogRecordProcessor(
                OTLPLogExporter(endpoint=otel_endpoint, insecure=True)
            )
        )
        _logs.set_logger_provider(logger_provider)

        # Add OTEL handler in addition to stdout
        otel_handler = LoggingHandler(logger_provider=logger_provider)
        handlers.append(otel_handler)

    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, handlers=handlers)
    return logger_provider


logger = logging.getLogger(__name__)


def main(argv=None):
    """Run the fan controllers until SIGINT or SIGTERM."""
    argv = sys.argv[1:] if argv is None else argv

    # Setup logging and get logger provider (if using OpenTelemetry)
    logger_provider = setup_logging()

    stop_event = threading.Event()
    workers = []
    messaging = None

    def request_stop(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    try:
        # Load configuration
        config_path = argv[0] if argv else os.environ.get(
            "FAN_CONTROL_CONFIG", "config.yaml"
        )
        logger.info(f"Loading configuration from {config_path}")
        config = load_config(config_path)
        gc = config.global_config
        rooms = config.controlled_rooms()

        # Initialize Home Assistant API
        logger.info("Initializing Home Assistant connection")
        ha = HomeAssistantAPI(
            ha_url=gc.homeassistant_url,
            ha_token=gc.homeassistant_token,
            timeout=gc.request_timeout,
        )

        messaging = MqttMessaging.from_config(gc)

        # Initialize one controller per room, with its own threads for
        # evaluation and for the Home Assistant calls
        controllers = {}
        room_workers = {}
        for room in rooms:
            logger.info(f"Initializing controller for {room.label}")
            actuator = ActuatorWorker(
                HomeAssistantFanActuator(ha, room.fans), name=f"actuator-{room.id}"
            )
            actuator.start()
            workers.append(actuator)

            controllers[room.id] = RoomController(
                room, actuator=actuator, publisher=messaging
            )
            room_workers[room.id] = RoomWorker(
                controllers[room.id], interval=gc.tick_interval
            )

        dispatcher = Dispatcher(controllers, room_workers)
        messaging.set_handler(dispatcher.handle_message)
        for room in rooms:
            messaging.subscribe_room(room)
        messaging.connect()

        for worker in room_workers.values():
            worker.start()
            workers.append(worker)

        bridge = SensorBridge(ha, messaging, rooms)
        bridge_thread = threading.Thread(
            target=bridge.run,
            args=(stop_event, gc.sensor_poll_interval),
            name="sensor-bridge",
            daemon=True,
        )
        bridge_thread.start()

        logger.info(f"Controlling {len(controllers)} room(s)")
        while not stop_event.wait(1):
            pass
    finally:
        for worker in workers:
            worker.stop()
        if messaging:
            messaging.close()

        # Ensure logs are flushed before exit
        if logger_provider:
            logger_provider.shutdown()


if __name__ == "__main__":
    main()
