from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("settlement", "0001_initial"),
    ]

    operations = [
        migrations.AlterField(
            model_name="settlementintentmodel",
            name="state",
            field=models.CharField(
                choices=[
                    ("opened", "Opened"), ("finalized", "Finalized"),
                    ("settled", "Settled"), ("rejected", "Rejected"),
                ],
                default="opened", max_length=16,
            ),
        ),
    ]
