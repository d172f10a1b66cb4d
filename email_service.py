import os
import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

logger = logging.getLogger(__name__)

# SMTP Configuration
SMTP_HOST = os.environ.get('SMTP_HOST', 'localhost')
SMTP_PORT = int(os.environ.get('SMTP_PORT', 465))
SMTP_USERNAME = os.environ.get('SMTP_USERNAME', '')
SMTP_PASSWORD = os.environ.get('SMTP_PASSWORD', '')
SMTP_FROM = os.environ.get('SMTP_FROM', 'tracking@localhost')
SMTP_SECURE = os.environ.get('SMTP_SECURE', 'ssl')
FRONTEND_URL = os.environ.get('FRONTEND_URL', 'http://localhost:3000')


def send_email(to_email: str, subject: str, html_content: str, text_content: str = None):
    """
    Send email via SMTP
    """
    if not SMTP_USERNAME or not SMTP_PASSWORD:
        logger.warning(f"Email not sent - SMTP not configured. Would send to: {to_email}")
        logger.info(f"Subject: {subject}")
        return False

    try:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"Field Tracking <{SMTP_FROM}>"
        msg['To'] = to_email

        if text_content:
            msg.attach(MIMEText(text_content, 'plain', 'utf-8'))
        msg.attach(MIMEText(html_content, 'html', 'utf-8'))

        if SMTP_SECURE == 'ssl':
            # SSL connection (port 465)
            server = smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT)
        else:
            # STARTTLS connection (port 587)
            server = smtplib.SMTP(SMTP_HOST, SMTP_PORT)
            server.starttls()

        server.login(SMTP_USERNAME, SMTP_PASSWORD)
        server.send_message(msg)
        server.quit()

        logger.info(f"Email sent successfully to {to_email}")
        return True

    except Exception as e:
        logger.error(f"Error sending email: {str(e)}")
        return False


def send_error_report_alert(to_email: str, report: dict):
    """
    Tell an operator that a device reported a tracking error
    """
    session_link = f"{FRONTEND_URL}/admin/tracking"
    session_id = report.get('session_id') or 'N/A'

    html_content = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <meta charset="utf-8">
        <style>
            body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
            .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
            .header {{ background: #c0392b; color: white; padding: 20px; text-align: center; border-radius: 10px 10px 0 0; }}
            .content {{ background: #f9f9f9; padding: 30px; border-radius: 0 0 10px 10px; }}
            .details {{ background: white; padding: 10px; border-radius: 5px; font-family: monospace; }}
        </style>
    </head>
    <body>
        <div class="container">
            <div class="header">
                <h1>GPS error: {report.get('error_type')}</h1>
            </div>
            <div class="content">
                <p>{report.get('error_message')}</p>
                <div class="details">
                    Session: {session_id}<br>
                    User: {report.get('user_id')}<br>
                    Reported at: {report.get('timestamp')}
                </div>
                <p><a href="{session_link}">Open live tracking</a></p>
            </div>
        </div>
    </body>
    </html>
    """

    text_content = f"""
    GPS error: {report.get('error_type')}

    {report.get('error_message')}

    Session: {session_id}
    User: {report.get('user_id')}
    Reported at: {report.get('timestamp')}
    """

    return send_email(to_email, f"GPS error reported: {report.get('error_type')}", html_content, text_content)
