import logging
from usblsim import logger


def makeRecord(msg, *args):
    return logging.LogRecord('xpdr', logging.INFO, __file__, 1, msg, args,
                             None, func='onInterrogationPing')


def test_set_sim_time():
    old = logger.simTime
    try:
        logger.setSimTime(12.5)
        assert logger.simTime == '12.50'
        record = logger.customRecordFactory('x', logging.INFO, __file__, 1,
                                            'm', None, None)
        assert record.simTime == '12.50'
    finally:
        logger.simTime = old


def test_formatter_fills_missing_sim_time():
    fmt = logger.CustomFormatter(logger.FMT_OUT)
    text = fmt.format(makeRecord('hello %s', 'world'))
    assert 'hello world' in text
    assert logger.simTime in text


def test_formatter_prefixes_each_line():
    fmt = logger.CustomFormatter(logger.FMT_OUT)
    text = fmt.format(makeRecord('first\nsecond'))
    lines = text.split('\n')
    assert len(lines) == 2
    assert lines[0].endswith('first')
    assert lines[1].endswith('second')
    assert lines[0][:-len('first')] == lines[1][:-len('second')]


def test_formatter_brackets_function_name():
    fmt = logger.CustomFormatter(logger.FUNCTION + ' ' + logger.MESSAGE)
    text = fmt.format(makeRecord('m'))
    assert text.startswith('[onInterrogationPing]')


def test_add_log_returns_existing():
    assert logger.addLog('xpdr') is logging.getLogger('xpdr')


def test_setup_comm_writes_own_file(tmp_path):
    fileName = str(tmp_path / 'comm_test.log')
    commLog = logger.setupComm('commtest', fileName=fileName, out=False)
    try:
        commLog.info('message on the wire')
        for h in commLog.handlers:
            h.flush()
        with open(fileName) as f:
            content = f.read()
        assert 'commtest logger activated' in content
        assert 'message on the wire' in content
    finally:
        logger.removeLog('commtest')
    assert 'commtest' not in logging.Logger.manager.loggerDict
