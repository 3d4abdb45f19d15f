"""Domain enums for the control network."""

from enum import StrEnum


class NodeType(StrEnum):
    user = "USER"
    worker = "WORKER"
    trigger_processor = "TRIGGER_PROCESSOR"


class NodeStatus(StrEnum):
    connected = "CONNECTED"
    disconnected = "DISCONNECTED"


class Priority(StrEnum):
    low = "LOW"
    normal = "NORMAL"
    high = "HIGH"
    critical = "CRITICAL"
    system = "SYSTEM"


class SystemMode(StrEnum):
    normal = "NORMAL"
    emergency_stop = "EMERGENCY_STOP"


class NetworkHealth(StrEnum):
    healthy = "HEALTHY"
    degraded = "DEGRADED"
    critical = "CRITICAL"


class ConditionType(StrEnum):
    signal_type = "SIGNAL_TYPE"
    value_threshold = "VALUE_THRESHOLD"
    time_schedule = "TIME_SCHEDULE"
    node_count = "NODE_COUNT"
    system_health = "SYSTEM_HEALTH"
    composite = "COMPOSITE"


class CompareOperator(StrEnum):
    equals = "EQUALS"
    not_equals = "NOT_EQUALS"
    greater_than = "GREATER_THAN"
    less_than = "LESS_THAN"
    greater_equal = "GREATER_EQUAL"
    less_equal = "LESS_EQUAL"


class CompositeOperator(StrEnum):
    and_ = "AND"
    or_ = "OR"
    not_ = "NOT"


class ScheduleKind(StrEnum):
    periodic = "PERIODIC"
    daily = "DAILY"
    once = "ONCE"


class NodeCountCheck(StrEnum):
    min_nodes = "MIN_NODES"
    max_nodes = "MAX_NODES"
    no_nodes = "NO_NODES"


class ActionType(StrEnum):
    send_signal = "SEND_SIGNAL"
    update_setpoint = "UPDATE_SETPOINT"
    raise_alarm = "RAISE_ALARM"
    log_event = "LOG_EVENT"
    run_script = "RUN_SCRIPT"
    toggle_rule = "TOGGLE_RULE"
    system_control = "SYSTEM_CONTROL"


class RuleToggle(StrEnum):
    enable = "ENABLE"
    disable = "DISABLE"
    reset = "RESET"


class SystemCommand(StrEnum):
    emergency_shutdown = "EMERGENCY_SHUTDOWN"
    cleanup_stale_nodes = "CLEANUP_STALE_NODES"
    restart_monitoring = "RESTART_MONITORING"


class ControllerType(StrEnum):
    pid = "PID"
    fuzzy = "FUZZY"
    on_off = "ON_OFF"
    mpc = "MPC"


class LoopMode(StrEnum):
    auto = "AUTO"
    manual = "MANUAL"
    cascade = "CASCADE"


class LoopState(StrEnum):
    registered = "REGISTERED"
    active = "ACTIVE"
    disabled = "DISABLED"
    removed = "REMOVED"


class SafetyStatus(StrEnum):
    armed = "ARMED"
    emergency_stop = "EMERGENCY_STOP"


class InterlockType(StrEnum):
    critical = "CRITICAL"
    warning = "WARNING"


class InterlockAction(StrEnum):
    stop_all_processes = "STOP_ALL_PROCESSES"
    emergency_cooling = "EMERGENCY_COOLING"
    vent_to_atmosphere = "VENT_TO_ATMOSPHERE"
    stop_pump = "STOP_PUMP"


class EstopScope(StrEnum):
    global_ = "GLOBAL"
    local = "LOCAL"


class EstopKind(StrEnum):
    hardwired = "HARDWIRED"
    software = "SOFTWARE"


class AlarmPriority(StrEnum):
    low = "LOW"
    medium = "MEDIUM"
    high = "HIGH"
    critical = "CRITICAL"


class AlarmCategory(StrEnum):
    process = "PROCESS"
    safety = "SAFETY"
    security = "SECURITY"
    communication = "COMMUNICATION"
    system = "SYSTEM"


class PermitType(StrEnum):
    hot_work = "HOT_WORK"
    confined_space = "CONFINED_SPACE"
    electrical_work = "ELECTRICAL_WORK"
    excavation = "EXCAVATION"
    working_at_height = "WORKING_AT_HEIGHT"
    radiation_work = "RADIATION_WORK"


class PermitStatus(StrEnum):
    active = "ACTIVE"
    expired = "EXPIRED"
    suspended = "SUSPENDED"


class SafetyLoopStatus(StrEnum):
    normal = "NORMAL"
    test_due = "TEST_DUE"
    faulted = "FAULTED"


class SiteStatus(StrEnum):
    offline = "OFFLINE"
    connecting = "CONNECTING"
    online = "ONLINE"
    timeout = "TIMEOUT"
    error = "ERROR"


class SiteHealth(StrEnum):
    unknown = "UNKNOWN"
    healthy = "HEALTHY"
    degraded = "DEGRADED"
    failed = "FAILED"


class EventName(StrEnum):
    node_registered = "node_registered"
    node_disconnected = "node_disconnected"
    signal_processed = "signal_processed"
    signal_dispatched = "signal_dispatched"
    rate_limit_exceeded = "rate_limit_exceeded"
    rule_registered = "rule_registered"
    rule_enabled = "rule_enabled"
    rule_disabled = "rule_disabled"
    rule_triggered = "rule_triggered"
    setpoint_update = "setpoint_update"
    system_command = "system_command"
    loop_registered = "loop_registered"
    loop_updated = "loop_updated"
    loop_tuned = "loop_tuned"
    loop_output = "loop_output"
    loop_faulted = "loop_faulted"
    alarm_raised = "alarm_raised"
    safety_interlock_triggered = "safety_interlock_triggered"
    safety_action_executed = "safety_action_executed"
    emergency_stop_activated = "emergency_stop_activated"
    emergency_mode_reset = "emergency_mode_reset"
    emergency_shutdown_completed = "emergency_shutdown_completed"
    permit_issued = "permit_issued"
    permit_expired = "permit_expired"
    safety_loop_test_due = "safety_loop_test_due"
    site_registered = "site_registered"
    site_connected = "site_connected"
    site_disconnected = "site_disconnected"
    site_health_degraded = "site_health_degraded"
    site_timeout = "site_timeout"
    site_command_sent = "site_command_sent"
    emergency_broadcast = "emergency_broadcast"
    health_changed = "health_changed"
